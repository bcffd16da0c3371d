"""Match engine: compare a probe photo against every reference category.

Pipeline: normalize orientation -> align -> embed -> save audit snapshot ->
scan categories -> keep similarities >= threshold -> sort descending.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Sequence

import numpy as np

from vigil.interfaces import Aligner, Embedder
from vigil.logging_config import get_logger
from vigil.store import EmbeddingStore, score_entries
from vigil.utils import ImageSource, load_image

logger = get_logger(__name__)

DEFAULT_MATCH_THRESHOLD = 0.8

NO_FACE_MESSAGE = "no face detected or embedding failed"
NO_MATCHES_MESSAGE = "no matches found"

# Similarities this close below the threshold still count as reaching it
THRESHOLD_TOLERANCE = 1e-6


@dataclass
class FaceMatch:
    """One stored face that matched a probe.

    Attributes:
        key: Store key of the matched entry
        category: Category the entry belongs to
        similarity: Cosine similarity to the probe
        image: Decoded reference face (BGR)
    """

    key: str
    category: str
    similarity: float
    image: np.ndarray = field(repr=False)

    def __repr__(self) -> str:
        return (
            f"FaceMatch(key='{self.key}', category='{self.category}', "
            f"similarity={self.similarity:.3f})"
        )


@dataclass
class CompareResult:
    """Outcome of :meth:`MatchEngine.compare_faces`.

    Attributes:
        matches: Matches ordered by similarity, highest first
        message: Short human-readable status
    """

    matches: List[FaceMatch]
    message: str

    @property
    def found(self) -> bool:
        return bool(self.matches)


def _matches_message(count: int) -> str:
    if count == 0:
        return NO_MATCHES_MESSAGE
    return f"matches found: {count}"


class MatchEngine:
    """Orchestrates aligner, embedder and store for probe comparisons.

    Detection or embedding failures are normal outcomes: they produce an
    empty match list and a status message, never an exception.

    Attributes:
        aligner: Face aligner
        embedder: Embedding extractor
        store: Reference embedding store
        threshold: Default minimum similarity (inclusive)
        categories: Categories scanned by default, in order

    Example:
        >>> engine = MatchEngine(aligner, embedder, store)
        >>> result = engine.compare_faces("probe.jpg")
        >>> print(result.message)
        >>> for match in result.matches:
        ...     print(f"{match.category}/{match.key}: {match.similarity:.2f}")
    """

    def __init__(
        self,
        aligner: Aligner,
        embedder: Embedder,
        store: EmbeddingStore,
        threshold: float = DEFAULT_MATCH_THRESHOLD,
        categories: Optional[Sequence[str]] = None,
    ):
        """Initialize the match engine.

        Args:
            aligner: Face aligner instance
            embedder: Embedding extractor instance
            store: Reference embedding store
            threshold: Default similarity threshold (0.0 to 1.0)
            categories: Categories to scan; defaults to the store's
                searchable categories

        Raises:
            ValueError: If threshold is not in valid range.
        """
        self._check_threshold(threshold)

        self.aligner = aligner
        self.embedder = embedder
        self.store = store
        self.threshold = threshold
        self.categories = (
            list(categories) if categories is not None else store.searchable_categories
        )

        logger.info(
            f"Initialized MatchEngine with threshold={threshold:.2f}, "
            f"categories={self.categories}"
        )

    @staticmethod
    def _check_threshold(threshold: float) -> None:
        if not 0.0 <= threshold <= 1.0:
            raise ValueError(f"Threshold must be in [0, 1], got {threshold}")

    def compare_faces(
        self,
        probe: ImageSource,
        threshold: Optional[float] = None,
        categories: Optional[Sequence[str]] = None,
    ) -> CompareResult:
        """Find stored faces matching the face in a probe photo.

        Args:
            probe: Probe photo as BGR array, file path or encoded bytes
            threshold: Minimum similarity, overriding the engine default
            categories: Categories to scan, overriding the engine default

        Returns:
            CompareResult with matches sorted by similarity (descending).
        """
        if threshold is None:
            threshold = self.threshold
        self._check_threshold(threshold)

        frame = load_image(probe)
        if frame is None:
            logger.info("Probe image could not be decoded")
            return CompareResult(matches=[], message=NO_FACE_MESSAGE)

        embedding = None
        try:
            aligned = self.aligner.align(frame)
            if aligned is not None:
                embedding = self.embedder.embed(aligned)
        except Exception as e:
            logger.warning(f"Failed to align or embed probe: {e}")
            aligned = None

        if aligned is None or embedding is None:
            logger.info("No face detected or embedding failed for probe")
            return CompareResult(matches=[], message=NO_FACE_MESSAGE)

        # Audit trail only; a failed write does not stop the comparison
        self.store.save_comparison_image(aligned)

        matches = self.search(embedding, threshold=threshold, categories=categories)
        message = _matches_message(len(matches))

        logger.info(f"Probe comparison done: {message}")
        return CompareResult(matches=matches, message=message)

    def search(
        self,
        embedding: np.ndarray,
        threshold: Optional[float] = None,
        categories: Optional[Sequence[str]] = None,
    ) -> List[FaceMatch]:
        """Scan categories for entries similar to an embedding.

        Entries whose stored image cannot be read are left out. Equal
        similarities keep scan order (category order, then index order);
        callers should not rely on that tie-break.

        Args:
            embedding: Probe embedding, shape [D]
            threshold: Minimum similarity (inclusive)
            categories: Categories to scan, in order

        Returns:
            Matches sorted by similarity, highest first.
        """
        if threshold is None:
            threshold = self.threshold
        scan_order = list(categories) if categories is not None else self.categories

        found: List[FaceMatch] = []
        for category in scan_order:
            entries = self.store.load_all(category)

            for key, similarity in score_entries(embedding, entries):
                if similarity + THRESHOLD_TOLERANCE < threshold:
                    continue

                image = self.store.load_image(key, category)
                if image is None:
                    logger.warning(
                        f"Stored image for '{key}' in '{category}' is unreadable, skipping"
                    )
                    continue

                found.append(
                    FaceMatch(key=key, category=category, similarity=similarity, image=image)
                )

            logger.debug(f"Scanned {len(entries)} entries in '{category}'")

        found.sort(key=lambda match: match.similarity, reverse=True)
        return found

    def set_threshold(self, threshold: float) -> None:
        """Update the default threshold.

        Raises:
            ValueError: If threshold is not in valid range.
        """
        self._check_threshold(threshold)

        old_threshold = self.threshold
        self.threshold = threshold

        logger.info(f"Updated match threshold: {old_threshold:.2f} -> {threshold:.2f}")

    def __repr__(self) -> str:
        return (
            f"MatchEngine(threshold={self.threshold:.2f}, "
            f"categories={self.categories}, store={self.store})"
        )

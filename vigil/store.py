"""Persistent, category-partitioned store of face embeddings.

Each category owns one JSON index file and one image directory. The index
maps an opaque key to ``{"embedding": [...], "imageFilename": "..."}``; the
face image lives in the category's directory under that filename.

Inserts are guarded against near-duplicates: a face whose cosine similarity
to any stored face of the same category exceeds the dedup threshold (0.99)
is not stored. After every successful insert the whole index is rewritten
through a temporary file and an atomic rename, so readers never observe a
partially written file.
"""

from __future__ import annotations

import json
import threading
import uuid
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

import numpy as np

from vigil.config import CategoryConfig, Config
from vigil.logging_config import get_logger
from vigil.utils import (
    cosine_similarities,
    encode_jpeg,
    read_image_file,
    write_json_atomic,
)

logger = get_logger(__name__)

DEFAULT_DEDUP_THRESHOLD = 0.99
DEFAULT_JPEG_QUALITY = 90


@dataclass(frozen=True, eq=False)
class StoredEmbedding:
    """One persisted reference face.

    Attributes:
        embedding: Read-only float64 vector
        image_filename: Name of the face JPEG inside the category directory
    """

    embedding: np.ndarray
    image_filename: str

    def to_dict(self) -> dict:
        """Serialize using the on-disk field names."""
        return {
            "embedding": [float(x) for x in self.embedding],
            "imageFilename": self.image_filename,
        }

    @classmethod
    def from_dict(cls, data: Mapping) -> StoredEmbedding:
        """Parse one index entry.

        Raises:
            ValueError: If the entry is malformed.
        """
        if not isinstance(data, Mapping):
            raise ValueError(f"Entry must be an object, got {type(data).__name__}")

        filename = data.get("imageFilename")
        if not isinstance(filename, str) or not filename:
            raise ValueError("Entry has no imageFilename")

        try:
            embedding = np.asarray(data.get("embedding"), dtype=np.float64).reshape(-1)
        except (TypeError, ValueError) as e:
            raise ValueError(f"Entry has an invalid embedding: {e}") from e
        if embedding.size == 0 or not np.all(np.isfinite(embedding)):
            raise ValueError("Entry has an empty or non-finite embedding")

        embedding.setflags(write=False)
        return cls(embedding=embedding, image_filename=filename)


class SaveStatus(str, Enum):
    """Outcome of a save attempt."""

    SAVED = "saved"
    DUPLICATE = "duplicate"
    FAILED = "failed"


@dataclass(frozen=True)
class SaveResult:
    """Result of :meth:`EmbeddingStore.save_with_status`.

    Attributes:
        status: SAVED, DUPLICATE or FAILED
        key: Key of the new entry when saved, otherwise None
        similarity: Highest similarity to an existing entry (duplicates only)
    """

    status: SaveStatus
    key: Optional[str] = None
    similarity: Optional[float] = None

    @property
    def saved(self) -> bool:
        return self.status is SaveStatus.SAVED


def score_entries(
    query: np.ndarray,
    entries: Mapping[str, StoredEmbedding],
) -> List[Tuple[str, float]]:
    """Cosine similarity of ``query`` against every comparable entry, in mapping order.

    Entries whose dimension differs from the query are not comparable and are
    left out of the result.
    """
    query = np.asarray(query, dtype=np.float64).reshape(-1)
    keys = [key for key, stored in entries.items() if stored.embedding.shape == query.shape]
    if not keys:
        return []

    matrix = np.stack([entries[key].embedding for key in keys], axis=0)
    return list(zip(keys, cosine_similarities(query, matrix).tolist()))


class _CategoryState:
    """In-memory index of one category plus the lock serializing its writers."""

    def __init__(self, config: CategoryConfig, entries: Dict[str, StoredEmbedding]):
        self.config = config
        self.entries = entries
        self.lock = threading.RLock()


class EmbeddingStore:
    """Category-partitioned embedding store with near-duplicate rejection.

    Each category is loaded from its index file when the store is created; a
    missing or unreadable file yields an empty category. All mutations of a
    category (dedup scan, image write, index rewrite) run under that
    category's lock, so two concurrent saves of the same face cannot both
    succeed.

    Attributes:
        dedup_threshold: Similarity above which an insert is rejected
        jpeg_quality: Quality used for stored face images
        comparison_dir: Default directory for probe audit snapshots

    Example:
        >>> store = EmbeddingStore.from_config(get_config())
        >>> key = store.save(embedding, face, "regular")
        >>> if key is None:
        ...     print("duplicate or failed")
        >>> stored = store.load_all("regular")[key]
    """

    def __init__(
        self,
        categories: Iterable[CategoryConfig],
        comparison_dir: str | Path,
        dedup_threshold: float = DEFAULT_DEDUP_THRESHOLD,
        jpeg_quality: int = DEFAULT_JPEG_QUALITY,
    ):
        """Initialize the store and load every category index.

        Args:
            categories: Category table, in search order
            comparison_dir: Directory for probe audit snapshots
            dedup_threshold: Similarity above which a save is a duplicate
            jpeg_quality: JPEG quality (1-100) for stored images

        Raises:
            ValueError: If category names repeat or share files, or a
                threshold/quality is out of range.
        """
        if not 0.0 <= dedup_threshold <= 1.0:
            raise ValueError(f"dedup_threshold must be in [0, 1], got {dedup_threshold}")
        if not 1 <= jpeg_quality <= 100:
            raise ValueError(f"jpeg_quality must be in [1, 100], got {jpeg_quality}")

        self.dedup_threshold = dedup_threshold
        self.jpeg_quality = jpeg_quality
        self.comparison_dir = Path(comparison_dir)

        self._states: Dict[str, _CategoryState] = {}
        used_paths: set = set()
        for category in categories:
            if category.name in self._states:
                raise ValueError(f"Duplicate category name: {category.name}")
            paths = {Path(category.index_file).resolve(), Path(category.image_dir).resolve()}
            if paths & used_paths:
                raise ValueError(f"Category '{category.name}' shares files with another category")
            used_paths |= paths

            self._create_dir(Path(category.image_dir))
            entries = self._read_index(Path(category.index_file))
            self._states[category.name] = _CategoryState(category, entries)

            logger.info(f"Loaded {len(entries)} embedding(s) for category '{category.name}'")

        self._create_dir(self.comparison_dir)

    @classmethod
    def from_config(cls, config: Config) -> EmbeddingStore:
        """Create a store from the configured category table."""
        return cls(
            categories=config.categories,
            comparison_dir=config.comparison_dir,
            dedup_threshold=config.dedup_threshold,
            jpeg_quality=config.jpeg_quality,
        )

    # ------------------------------------------------------------------
    # Categories
    # ------------------------------------------------------------------

    @property
    def categories(self) -> List[str]:
        """All category names, in configuration order."""
        return list(self._states.keys())

    @property
    def searchable_categories(self) -> List[str]:
        """Categories scanned by default when matching."""
        return [name for name, state in self._states.items() if state.config.searchable]

    def category_config(self, category: str) -> CategoryConfig:
        return self._state(category).config

    def _state(self, category: str) -> _CategoryState:
        try:
            return self._states[category]
        except KeyError:
            raise KeyError(
                f"Unknown category '{category}'. Known categories: {self.categories}"
            ) from None

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def load_all(self, category: str) -> Dict[str, StoredEmbedding]:
        """Return a snapshot of every stored embedding in a category.

        Raises:
            KeyError: If the category is not configured.
        """
        state = self._state(category)
        with state.lock:
            return dict(state.entries)

    def count(self, category: str) -> int:
        """Number of stored entries in a category."""
        state = self._state(category)
        with state.lock:
            return len(state.entries)

    def image_path(self, key: str, category: str) -> Optional[Path]:
        """Path of the face image stored under ``key``, or None if absent."""
        state = self._state(category)
        with state.lock:
            stored = state.entries.get(key)
        if stored is None:
            return None
        return Path(state.config.image_dir) / stored.image_filename

    def load_image(self, key: str, category: str) -> Optional[np.ndarray]:
        """Decode the face image stored under ``key``.

        Returns:
            BGR image, or None if the key is absent or the file is missing
            or corrupt.
        """
        path = self.image_path(key, category)
        if path is None:
            return None
        return read_image_file(path)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def save(self, embedding: np.ndarray, image: np.ndarray, category: str) -> Optional[str]:
        """Store a face unless a near-identical one already exists.

        Returns:
            The new key, or None if the face was a duplicate or the write
            failed. Use :meth:`save_with_status` to tell the two apart.
        """
        return self.save_with_status(embedding, image, category).key

    def save_with_status(
        self,
        embedding: np.ndarray,
        image: np.ndarray,
        category: str,
    ) -> SaveResult:
        """Store a face and report whether it was saved, duplicate or failed.

        Steps, all under the category lock:
        1. Score the embedding against every stored entry
        2. Reject if any similarity exceeds the dedup threshold
        3. Write the JPEG under a fresh filename
        4. Rewrite the whole index with the new entry, atomically
        5. Publish the new mapping in memory

        A failure in step 3 or 4 leaves memory and disk as they were.

        Args:
            embedding: Face embedding, shape [D]
            image: Face image in BGR format
            category: Target category name

        Raises:
            KeyError: If the category is not configured.
        """
        state = self._state(category)

        vector = np.array(embedding, dtype=np.float64).reshape(-1)
        if vector.size == 0 or not np.all(np.isfinite(vector)):
            logger.error(f"Refusing to store an empty or non-finite embedding in '{category}'")
            return SaveResult(SaveStatus.FAILED)
        vector.setflags(write=False)

        if not isinstance(image, np.ndarray) or image.size == 0:
            logger.error(f"Refusing to store an empty image in '{category}'")
            return SaveResult(SaveStatus.FAILED)

        with state.lock:
            scores = score_entries(vector, state.entries)
            if scores:
                best_key, best = max(scores, key=lambda item: item[1])
                if best > self.dedup_threshold:
                    logger.info(
                        f"Similar face already exists in '{category}' "
                        f"(key={best_key}, similarity={best:.4f}), skipping save"
                    )
                    return SaveResult(SaveStatus.DUPLICATE, similarity=best)

            data = encode_jpeg(image, self.jpeg_quality)
            if data is None:
                logger.error(f"Could not encode face image for '{category}'")
                return SaveResult(SaveStatus.FAILED)

            image_dir = Path(state.config.image_dir)
            filename = f"{uuid.uuid4()}.jpg"
            image_path = image_dir / filename
            try:
                image_dir.mkdir(parents=True, exist_ok=True)
                image_path.write_bytes(data)
            except OSError as e:
                logger.error(f"Failed to save face image {image_path}: {e}")
                return SaveResult(SaveStatus.FAILED)

            key = str(uuid.uuid4())
            while key in state.entries:
                key = str(uuid.uuid4())

            updated = dict(state.entries)
            updated[key] = StoredEmbedding(embedding=vector, image_filename=filename)

            try:
                self._write_index(Path(state.config.index_file), updated)
            except (OSError, TypeError, ValueError) as e:
                logger.error(f"Failed to save index for '{category}': {e}")
                self._remove_file(image_path)
                return SaveResult(SaveStatus.FAILED)

            state.entries = updated

        logger.info(f"Saved embedding and image for '{category}' at {image_path}")
        return SaveResult(SaveStatus.SAVED, key=key)

    def delete(self, key: str, category: str) -> bool:
        """Remove an entry and its image.

        Returns:
            True if the entry existed and the index was rewritten.
        """
        state = self._state(category)

        with state.lock:
            stored = state.entries.get(key)
            if stored is None:
                logger.warning(f"Key '{key}' not found in '{category}'")
                return False

            updated = dict(state.entries)
            del updated[key]

            try:
                self._write_index(Path(state.config.index_file), updated)
            except (OSError, TypeError, ValueError) as e:
                logger.error(f"Failed to save index for '{category}': {e}")
                return False

            state.entries = updated

        self._remove_file(Path(state.config.image_dir) / stored.image_filename)
        logger.info(f"Deleted entry '{key}' from '{category}'")
        return True

    def save_comparison_image(
        self,
        image: np.ndarray,
        folder: str | Path | None = None,
    ) -> Optional[Path]:
        """Write a probe face to the audit folder.

        No dedup and no indexing. Failures are logged and return None.

        Args:
            image: Face image in BGR format
            folder: Target directory (defaults to the comparison directory)

        Returns:
            Path of the written JPEG, or None on failure.
        """
        target = Path(folder) if folder is not None else self.comparison_dir

        if not isinstance(image, np.ndarray) or image.size == 0:
            logger.warning("Empty comparison image, not saved")
            return None

        data = encode_jpeg(image, self.jpeg_quality)
        if data is None:
            logger.warning("Could not encode comparison image")
            return None

        path = target / f"{uuid.uuid4()}.jpg"
        try:
            target.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError as e:
            logger.warning(f"Failed to save comparison image: {e}")
            return None

        logger.debug(f"Saved comparison image at {path}")
        return path

    # ------------------------------------------------------------------
    # File handling
    # ------------------------------------------------------------------

    @staticmethod
    def _read_index(index_file: Path) -> Dict[str, StoredEmbedding]:
        """Load an index file; missing or corrupt files yield an empty mapping."""
        if not index_file.exists():
            return {}

        try:
            with open(index_file, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.warning(f"Could not read index {index_file}: {e}. Starting empty.")
            return {}

        if not isinstance(raw, dict):
            logger.warning(f"Index {index_file} is not a JSON object. Starting empty.")
            return {}

        entries: Dict[str, StoredEmbedding] = {}
        for key, value in raw.items():
            try:
                entries[str(key)] = StoredEmbedding.from_dict(value)
            except ValueError as e:
                logger.warning(f"Skipping malformed entry '{key}' in {index_file}: {e}")

        return entries

    @staticmethod
    def _write_index(index_file: Path, entries: Mapping[str, StoredEmbedding]) -> None:
        """Rewrite a whole index file atomically."""
        write_json_atomic(index_file, {key: stored.to_dict() for key, stored in entries.items()})

    @staticmethod
    def _create_dir(folder: Path) -> None:
        try:
            folder.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.warning(f"Could not create directory {folder}: {e}")

    @staticmethod
    def _remove_file(path: Path) -> None:
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Could not remove {path}: {e}")

    def __repr__(self) -> str:
        sizes = ", ".join(f"{name}={len(s.entries)}" for name, s in self._states.items())
        return f"EmbeddingStore({sizes}, dedup_threshold={self.dedup_threshold})"

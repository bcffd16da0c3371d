"""Pipeline context owning the detector, model and store handles.

Callers construct one :class:`FacePipeline` and pass it around instead of
reaching for process-wide singletons. Tests build their own from fakes.

Usage:
    pipeline = FacePipeline.from_config(get_config())
    result = pipeline.compare_faces("probe.jpg")
    outcome = pipeline.enroll("wanted.jpg", "regular")
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import numpy as np

from vigil.aligner import FaceAligner
from vigil.config import Config
from vigil.embedder import FaceEmbedder
from vigil.interfaces import Aligner, Detector, Embedder
from vigil.logging_config import get_logger
from vigil.matching import DEFAULT_MATCH_THRESHOLD, CompareResult, MatchEngine
from vigil.store import EmbeddingStore, SaveResult
from vigil.utils import ImageSource, load_image

logger = get_logger(__name__)


@dataclass
class FacePipeline:
    """Container for the components of the face-matching core.

    Attributes:
        aligner: Face aligner (wraps the detector)
        embedder: Embedding extractor (owns the model handle)
        store: Category-partitioned embedding store
        engine: Match engine over the three above
    """

    aligner: Aligner
    embedder: Embedder
    store: EmbeddingStore
    engine: MatchEngine

    @classmethod
    def assemble(
        cls,
        detector: Detector,
        embedder: Embedder,
        store: EmbeddingStore,
        threshold: float = DEFAULT_MATCH_THRESHOLD,
        categories: Optional[Sequence[str]] = None,
    ) -> FacePipeline:
        """Wire a pipeline from an existing detector, embedder and store."""
        aligner = FaceAligner(detector)
        engine = MatchEngine(
            aligner=aligner,
            embedder=embedder,
            store=store,
            threshold=threshold,
            categories=categories,
        )
        return cls(aligner=aligner, embedder=embedder, store=store, engine=engine)

    @classmethod
    def from_config(cls, config: Config | None = None) -> FacePipeline:
        """Build the production pipeline: SCRFD detector, ONNX embedder, JSON store.

        Raises:
            RuntimeError: If the face detector cannot be loaded. A missing
                embedding model is not raised; embedding calls fail instead.
        """
        if config is None:
            from vigil.config import get_config

            config = get_config()

        logger.info("Creating face pipeline...")

        from vigil.detector_scrfd import SCRFDDetector

        detector = SCRFDDetector(config)
        embedder = FaceEmbedder.from_config(config)
        store = EmbeddingStore.from_config(config)

        pipeline = cls.assemble(
            detector=detector,
            embedder=embedder,
            store=store,
            threshold=config.match_threshold,
        )
        logger.info(f"Face pipeline ready: {pipeline.store}")
        return pipeline

    def process(self, image: ImageSource) -> Optional[Tuple[np.ndarray, np.ndarray]]:
        """Align and embed the first face of an image.

        Returns:
            (aligned_face, embedding), or None if no face was found or the
            embedding failed.
        """
        frame = load_image(image)
        if frame is None:
            return None

        aligned = self.aligner.align(frame)
        if aligned is None:
            return None

        embedding = self.embedder.embed(aligned)
        if embedding is None:
            return None

        return aligned, embedding

    def enroll(self, image: ImageSource, category: str) -> Optional[SaveResult]:
        """Run align -> embed -> save for one reference photo.

        Returns:
            SaveResult from the store, or None if no usable face was found.

        Raises:
            KeyError: If the category is not configured.
        """
        self.store.category_config(category)

        processed = self.process(image)
        if processed is None:
            return None

        aligned, embedding = processed
        return self.store.save_with_status(embedding, aligned, category)

    def compare_faces(
        self,
        probe: ImageSource,
        threshold: Optional[float] = None,
        categories: Optional[Sequence[str]] = None,
    ) -> CompareResult:
        """Shortcut for :meth:`MatchEngine.compare_faces`."""
        return self.engine.compare_faces(probe, threshold=threshold, categories=categories)

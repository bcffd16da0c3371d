"""vigil: face alignment, embedding and category-partitioned face matching.

Components:
- FaceAligner: eye-level deskew + square face crop
- FaceEmbedder: L2-normalized embeddings from a pre-trained ONNX model
- EmbeddingStore: per-category JSON index with near-duplicate rejection
- MatchEngine: thresholded, ranked search across categories
- FacePipeline: context object wiring the above together
- IngestionService: bulk population of reference categories

The SCRFD detector lives in ``vigil.detector_scrfd`` and is imported on
demand because it pulls in InsightFace.
"""

from vigil.aligner import FaceAligner
from vigil.config import CategoryConfig, Config, get_config
from vigil.embedder import FaceEmbedder, OnnxEmbeddingModel
from vigil.ingestion import IngestionReport, IngestionService, IngestOutcome, VisitedUrlLedger
from vigil.interfaces import BBox, Detection
from vigil.matching import CompareResult, FaceMatch, MatchEngine
from vigil.pipeline import FacePipeline
from vigil.store import EmbeddingStore, SaveResult, SaveStatus, StoredEmbedding
from vigil.utils import cosine_similarity, l2_normalize

__all__ = [
    "BBox",
    "CategoryConfig",
    "CompareResult",
    "Config",
    "Detection",
    "EmbeddingStore",
    "FaceAligner",
    "FaceEmbedder",
    "FaceMatch",
    "FacePipeline",
    "IngestOutcome",
    "IngestionReport",
    "IngestionService",
    "MatchEngine",
    "OnnxEmbeddingModel",
    "SaveResult",
    "SaveStatus",
    "StoredEmbedding",
    "VisitedUrlLedger",
    "cosine_similarity",
    "get_config",
    "l2_normalize",
]

"""ArcFace-style embedder for face feature extraction.

Aligned face crops are resized to 112x112, turned into a channel-first RGB
tensor with values in [0, 1] and fed to a pre-trained ONNX model. The raw
output vector is L2-normalized.
"""

from __future__ import annotations

from pathlib import Path
from typing import List, Optional

import cv2
import numpy as np
import onnxruntime as ort

from vigil.config import Config
from vigil.interfaces import EmbeddingModel
from vigil.logging_config import get_logger
from vigil.utils import l2_normalize, normalize_image, onnx_providers

logger = get_logger(__name__)

# Model input resolution as (width, height)
INPUT_SIZE = (112, 112)


def preprocess_face(face_bgr: np.ndarray) -> Optional[np.ndarray]:
    """Convert a BGR face crop into the model's input tensor.

    Args:
        face_bgr: Face crop in BGR format, shape [H, W, 3], any size

    Returns:
        float32 tensor of shape [1, 3, 112, 112] with RGB values in [0, 1],
        or None if the crop holds no pixel data.
    """
    if face_bgr is None or face_bgr.size == 0 or face_bgr.ndim != 3:
        return None

    resized = cv2.resize(face_bgr, INPUT_SIZE, interpolation=cv2.INTER_LINEAR)
    rgb = cv2.cvtColor(resized, cv2.COLOR_BGR2RGB)
    chw = normalize_image(rgb).transpose(2, 0, 1)

    return np.ascontiguousarray(chw[np.newaxis, ...], dtype=np.float32)


class OnnxEmbeddingModel:
    """Pre-trained embedding network served by ONNX Runtime.

    The session is created once and reused for every call.

    Attributes:
        session: ONNX Runtime inference session
        input_name: Name of the model's input tensor
        output_name: Name of the embedding output
    """

    def __init__(self, model_path: str | Path, ctx_id: int = -1):
        """Load the model.

        Args:
            model_path: Path of the .onnx file
            ctx_id: Device context (-1=CPU, 0+=GPU)

        Raises:
            RuntimeError: If the model cannot be loaded.
        """
        self.model_path = Path(model_path)

        try:
            self.session = ort.InferenceSession(
                str(self.model_path), providers=onnx_providers(ctx_id)
            )
        except Exception as e:
            raise RuntimeError(f"Could not load embedding model {self.model_path}: {e}") from e

        self.input_name = self.session.get_inputs()[0].name
        self.output_name = self.session.get_outputs()[0].name

        logger.info(
            f"Loaded embedding model {self.model_path.name} "
            f"(input={self.input_name}, output={self.output_name})"
        )

    def predict(self, tensor: np.ndarray) -> np.ndarray:
        """Run the model on a [1, 3, 112, 112] tensor and return its output."""
        outputs = self.session.run([self.output_name], {self.input_name: tensor})
        return np.asarray(outputs[0])

    def __repr__(self) -> str:
        return f"OnnxEmbeddingModel(path={self.model_path})"


class FaceEmbedder:
    """Turns aligned face crops into L2-normalized embeddings.

    The embedder holds no state besides the model handle. When the model
    failed to load, the embedder stays usable but every call returns None.

    Attributes:
        model: Embedding model, or None if it could not be loaded
        embedding_dim: Expected output dimension, or None to accept any

    Example:
        >>> embedder = FaceEmbedder.from_config(get_config())
        >>> embedding = embedder.embed(aligned_face)
        >>> if embedding is not None:
        ...     assert abs(np.linalg.norm(embedding) - 1.0) < 1e-4
    """

    def __init__(
        self,
        model: Optional[EmbeddingModel],
        embedding_dim: Optional[int] = None,
    ):
        self.model = model
        self.embedding_dim = embedding_dim

    @classmethod
    def from_config(cls, config: Config) -> FaceEmbedder:
        """Create an embedder backed by the ONNX model named in the config.

        A load failure is logged and yields an embedder whose calls all fail.
        """
        try:
            model: Optional[EmbeddingModel] = OnnxEmbeddingModel(
                config.model_path, ctx_id=config.ctx_id
            )
        except RuntimeError as e:
            logger.error(f"Embedding model unavailable: {e}")
            model = None

        return cls(model=model, embedding_dim=config.embedding_dim)

    @property
    def available(self) -> bool:
        """True when a model is loaded."""
        return self.model is not None

    def embed(self, face_bgr: np.ndarray) -> Optional[np.ndarray]:
        """Extract an embedding from an aligned face crop.

        Args:
            face_bgr: Aligned face crop in BGR format, shape [H, W, 3]

        Returns:
            float32 vector of unit norm (the zero vector if the model output
            was all zeros), or None if preprocessing or inference failed.
        """
        if self.model is None:
            logger.debug("Embedding requested but no model is loaded")
            return None

        tensor = preprocess_face(face_bgr)
        if tensor is None:
            logger.warning("Face crop has no pixel data, cannot embed")
            return None

        try:
            raw = np.asarray(self.model.predict(tensor), dtype=np.float32).reshape(-1)
        except Exception as e:
            logger.error(f"Embedding model inference failed: {e}")
            return None

        if raw.size == 0 or not np.all(np.isfinite(raw)):
            logger.error("Embedding model returned an empty or non-finite vector")
            return None

        if self.embedding_dim is not None and raw.shape[0] != self.embedding_dim:
            logger.error(
                f"Unexpected embedding dimension {raw.shape[0]}, "
                f"expected {self.embedding_dim}"
            )
            return None

        embedding = l2_normalize(raw)
        if not embedding.any():
            logger.warning("Embedding has zero norm, returning zero vector")

        return embedding

    def embed_batch(self, faces_bgr: List[np.ndarray]) -> np.ndarray:
        """Embed several faces, skipping the ones that fail.

        Returns:
            Array of shape [N, D] with one row per successful face.
        """
        embeddings = []
        for face in faces_bgr:
            emb = self.embed(face)
            if emb is None:
                logger.warning("Failed to embed face, skipping")
                continue
            embeddings.append(emb)

        if not embeddings:
            return np.zeros((0, self.embedding_dim or 0), dtype=np.float32)

        return np.stack(embeddings, axis=0)

    def __repr__(self) -> str:
        state = "loaded" if self.available else "unavailable"
        return f"FaceEmbedder(model={state}, dim={self.embedding_dim})"

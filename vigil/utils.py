"""Utility functions for the face-matching pipeline.

Vector math (normalization, cosine similarity) shared by the store and the
match engine, image decoding/encoding helpers, and atomic JSON writes.
"""

from __future__ import annotations

import io
import json
import os
import tempfile
from pathlib import Path
from typing import List, Optional, Union

import cv2
import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from vigil.logging_config import get_logger

logger = get_logger(__name__)

# Denominator guard for cosine similarity
COSINE_EPS = 1e-10

ImageSource = Union[np.ndarray, str, Path, bytes]


def onnx_providers(ctx_id: int) -> List[str]:
    """ONNX Runtime execution providers for a device context (-1 = CPU)."""
    if ctx_id >= 0:
        return ["CUDAExecutionProvider", "CPUExecutionProvider"]
    return ["CPUExecutionProvider"]


def normalize_image(image: np.ndarray) -> np.ndarray:
    """Normalize a uint8 image to float32 in [0, 1].

    Example:
        >>> normalized = normalize_image(face_crop)
        >>> assert normalized.dtype == np.float32
    """
    return image.astype(np.float32) / 255.0


def l2_normalize(vec: np.ndarray) -> np.ndarray:
    """L2-normalize a 1-D vector.

    A vector whose norm is exactly zero is returned unchanged (all zeros)
    instead of being divided by zero.

    Args:
        vec: Vector to normalize, shape [D]

    Returns:
        float32 vector with unit norm, or the zero vector.

    Example:
        >>> normalized = l2_normalize(raw_output)
        >>> assert abs(np.linalg.norm(normalized) - 1.0) < 1e-4
    """
    vec = np.asarray(vec, dtype=np.float32).reshape(-1)
    norm = float(np.linalg.norm(vec.astype(np.float64)))
    if norm == 0.0:
        return vec
    return (vec / norm).astype(np.float32)


def cosine_similarity(vec1: np.ndarray, vec2: np.ndarray) -> float:
    """Compute cosine similarity between two vectors.

    The full formula ``dot / (|a| * |b| + eps)`` is evaluated, so vectors that
    were not normalized still score correctly. Vectors of different length
    score 0.0.

    Args:
        vec1: First vector, shape [D]
        vec2: Second vector, shape [D]

    Returns:
        Cosine similarity in range [-1, 1]. Higher = more similar.

    Example:
        >>> sim = cosine_similarity(probe, stored)
        >>> if sim >= 0.8:
        ...     print("Same person")
    """
    a = np.asarray(vec1, dtype=np.float64).reshape(-1)
    b = np.asarray(vec2, dtype=np.float64).reshape(-1)
    if a.shape != b.shape:
        return 0.0

    denom = np.linalg.norm(a) * np.linalg.norm(b) + COSINE_EPS
    return float(np.dot(a, b) / denom)


def cosine_similarities(query: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    """Cosine similarity of ``query`` against every row of ``matrix``.

    Args:
        query: Vector, shape [D]
        matrix: Stacked vectors, shape [N, D]

    Returns:
        float64 array of shape [N]. Empty when ``matrix`` has no rows.

    Raises:
        ValueError: If the dimensions differ.
    """
    q = np.asarray(query, dtype=np.float64).reshape(-1)
    m = np.asarray(matrix, dtype=np.float64)
    if m.size == 0:
        return np.zeros(0, dtype=np.float64)
    if m.ndim != 2 or m.shape[1] != q.shape[0]:
        raise ValueError(f"Expected matrix shape [N, {q.shape[0]}], got {m.shape}")

    denom = np.linalg.norm(m, axis=1) * np.linalg.norm(q) + COSINE_EPS
    return (m @ q) / denom


def load_image(source: ImageSource) -> Optional[np.ndarray]:
    """Decode an image into an upright BGR array.

    Paths and encoded bytes are read with Pillow so that the EXIF orientation
    tag is applied to the pixel data. Arrays are taken as already upright;
    grayscale and BGRA arrays are converted to 3-channel BGR.

    Args:
        source: BGR array, file path, or encoded image bytes

    Returns:
        uint8 array of shape [H, W, 3], or None if the image cannot be decoded.
    """
    if isinstance(source, np.ndarray):
        if source.size == 0:
            return None
        if source.ndim == 2:
            return cv2.cvtColor(source, cv2.COLOR_GRAY2BGR)
        if source.ndim == 3 and source.shape[2] == 4:
            return cv2.cvtColor(source, cv2.COLOR_BGRA2BGR)
        return source

    try:
        if isinstance(source, bytes):
            pil_image = Image.open(io.BytesIO(source))
        else:
            pil_image = Image.open(Path(source))

        pil_image = ImageOps.exif_transpose(pil_image)
        if pil_image.mode != "RGB":
            pil_image = pil_image.convert("RGB")

        img_rgb = np.array(pil_image)
    except (OSError, UnidentifiedImageError, ValueError) as e:
        logger.warning(f"Failed to decode image: {e}")
        return None

    return cv2.cvtColor(img_rgb, cv2.COLOR_RGB2BGR)


def encode_jpeg(image: np.ndarray, quality: int = 90) -> Optional[bytes]:
    """Encode a BGR image as JPEG bytes, or None if encoding fails."""
    try:
        ok, buffer = cv2.imencode(".jpg", image, [cv2.IMWRITE_JPEG_QUALITY, int(quality)])
    except cv2.error as e:
        logger.warning(f"JPEG encoding failed: {e}")
        return None
    if not ok:
        return None
    return buffer.tobytes()


def write_json_atomic(path: str | Path, payload: object) -> None:
    """Write JSON so that readers see either the old or the new file, never a mix.

    The data goes to a temporary file in the target directory, is flushed to
    disk, then renamed over the target.

    Raises:
        OSError: If the file cannot be written.
        TypeError: If ``payload`` is not JSON serializable.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(payload, f)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def read_image_file(path: str | Path) -> Optional[np.ndarray]:
    """Read a stored image file as BGR, or None if missing or corrupt."""
    path = Path(path)
    if not path.is_file():
        return None
    image = cv2.imread(str(path), cv2.IMREAD_COLOR)
    if image is None:
        logger.warning(f"Could not decode image file: {path}")
    return image

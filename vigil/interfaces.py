"""Core interfaces and data structures for the face-matching pipeline.

The pipeline depends on two external capabilities, a face detector and a
pre-trained embedding model. Both are expressed here as Protocols so the
production implementations (InsightFace SCRFD, ONNX Runtime) and the test
doubles are interchangeable.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Protocol, Sequence, runtime_checkable

import numpy as np

# Landmark rows in Detection.kps
LEFT_EYE = 0
RIGHT_EYE = 1


@dataclass
class BBox:
    """Bounding box for a detected face.

    Attributes:
        x1: Left edge x-coordinate (pixels)
        y1: Top edge y-coordinate (pixels)
        x2: Right edge x-coordinate (pixels)
        y2: Bottom edge y-coordinate (pixels)
    """

    x1: int
    y1: int
    x2: int
    y2: int

    @property
    def width(self) -> int:
        """Get bounding box width in pixels."""
        return self.x2 - self.x1

    @property
    def height(self) -> int:
        """Get bounding box height in pixels."""
        return self.y2 - self.y1

    def clamp(self, img_width: int, img_height: int) -> BBox:
        """Clamp the box to ``[0, width] x [0, height]``."""
        return BBox(
            x1=max(0, min(self.x1, img_width)),
            y1=max(0, min(self.y1, img_height)),
            x2=max(0, min(self.x2, img_width)),
            y2=max(0, min(self.y2, img_height)),
        )

    def __repr__(self) -> str:
        return f"BBox(x1={self.x1}, y1={self.y1}, x2={self.x2}, y2={self.y2})"


@dataclass
class Detection:
    """Face detection result with bounding box, landmarks, and confidence.

    Coordinates are absolute pixels with the origin at the top-left corner.

    Attributes:
        bbox: Bounding box around detected face
        kps: Optional 5-point landmarks, shape [5, 2].
             Order: left_eye, right_eye, nose, left_mouth, right_mouth
             (left/right as seen in the image)
        score: Detection confidence score (0.0 to 1.0)
    """

    bbox: BBox
    kps: Optional[np.ndarray]
    score: float

    def __post_init__(self) -> None:
        if not 0.0 <= self.score <= 1.0:
            raise ValueError(f"Detection score must be in [0, 1], got {self.score}")

        if self.kps is not None:
            if not isinstance(self.kps, np.ndarray):
                raise TypeError(f"kps must be numpy array, got {type(self.kps)}")
            if self.kps.ndim != 2 or self.kps.shape[1] != 2 or self.kps.shape[0] < 2:
                raise ValueError(f"kps must have shape (N>=2, 2), got {self.kps.shape}")

    @property
    def left_eye(self) -> Optional[np.ndarray]:
        """Image-left eye position (x, y), or None without landmarks."""
        return None if self.kps is None else self.kps[LEFT_EYE]

    @property
    def right_eye(self) -> Optional[np.ndarray]:
        """Image-right eye position (x, y), or None without landmarks."""
        return None if self.kps is None else self.kps[RIGHT_EYE]

    @classmethod
    def from_normalized(
        cls,
        box_xywh: Sequence[float],
        img_width: int,
        img_height: int,
        landmarks: Optional[Sequence[Sequence[float]]] = None,
        score: float = 1.0,
    ) -> Detection:
        """Build a pixel-space detection from normalized, bottom-left coordinates.

        Some detectors report boxes as ``(x, y, w, h)`` fractions of the image
        with ``y`` measured upward from the bottom edge. Image rows grow
        downward, so ``y`` is flipped while scaling.

        Args:
            box_xywh: Normalized box, origin at bottom-left
            img_width: Image width in pixels
            img_height: Image height in pixels
            landmarks: Optional normalized (x, y) points, origin at bottom-left
            score: Detection confidence

        Returns:
            Detection in pixel, top-left-origin coordinates.
        """
        x, y, w, h = (float(v) for v in box_xywh)
        bbox = BBox(
            x1=int(round(x * img_width)),
            y1=int(round((1.0 - y - h) * img_height)),
            x2=int(round((x + w) * img_width)),
            y2=int(round((1.0 - y) * img_height)),
        )

        kps = None
        if landmarks is not None:
            points = np.asarray(landmarks, dtype=np.float32).reshape(-1, 2)
            kps = np.stack(
                [points[:, 0] * img_width, (1.0 - points[:, 1]) * img_height],
                axis=1,
            ).astype(np.float32)

        return cls(bbox=bbox, kps=kps, score=score)

    def __repr__(self) -> str:
        kps_str = "None" if self.kps is None else f"array{self.kps.shape}"
        return f"Detection(bbox={self.bbox}, score={self.score:.3f}, kps={kps_str})"


@runtime_checkable
class Detector(Protocol):
    """Protocol for face detection models.

    Returns detections in the order the underlying model reports them.
    Callers in this package only ever use the first one.
    """

    def detect(self, frame_bgr: np.ndarray) -> List[Detection]:
        """Detect faces in a BGR image of shape [H, W, 3].

        Returns:
            List of detections, empty if no face was found.
        """
        ...


@runtime_checkable
class EmbeddingModel(Protocol):
    """Protocol for the pre-trained embedding network.

    The model is a black box with a fixed contract: a float32 tensor of shape
    [1, 3, 112, 112] (RGB, values in [0, 1]) in, a raw vector of length D out.
    """

    def predict(self, tensor: np.ndarray) -> np.ndarray:
        ...


@runtime_checkable
class Aligner(Protocol):
    """Protocol for face alignment (deskew + square crop)."""

    def align(self, image_bgr: np.ndarray) -> Optional[np.ndarray]:
        """Return the aligned square face crop, or None on detection failure."""
        ...


@runtime_checkable
class Embedder(Protocol):
    """Protocol for face embedding extraction."""

    def embed(self, face_bgr: np.ndarray) -> Optional[np.ndarray]:
        """Return an L2-normalized embedding, or None on failure.

        Example:
            >>> embedding = embedder.embed(aligned_face)
            >>> assert abs(np.linalg.norm(embedding) - 1.0) < 1e-4
        """
        ...

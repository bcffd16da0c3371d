"""Eye-level face alignment with square cropping.

The aligner levels the eyes of the first detected face by rotating the whole
image, detects the face again on the rotated image, and crops a square region
around it. The embedder resizes the crop to the model's input resolution.
"""

from __future__ import annotations

import math
from typing import Optional

import cv2
import numpy as np

from vigil.interfaces import BBox, Detector
from vigil.logging_config import get_logger
from vigil.utils import ImageSource, load_image

logger = get_logger(__name__)


def eye_angle(left_eye: np.ndarray, right_eye: np.ndarray) -> float:
    """Angle (radians) of the line from the left eye to the right eye.

    Both points are in pixel coordinates with a top-left origin, so a positive
    angle means the right eye sits lower than the left one.
    """
    dx = float(right_eye[0]) - float(left_eye[0])
    dy = float(right_eye[1]) - float(left_eye[1])
    return math.atan2(dy, dx)


def rotate_bound(image: np.ndarray, angle_deg: float) -> np.ndarray:
    """Rotate an image around its centre without clipping the corners.

    The canvas grows to the bounding size of the rotated image; uncovered
    areas are filled with black.

    Args:
        image: Input image, shape [H, W, C]
        angle_deg: Rotation in degrees, positive = counter-clockwise on screen

    Returns:
        Rotated image on the expanded canvas.
    """
    h, w = image.shape[:2]
    cx, cy = w / 2.0, h / 2.0

    matrix = cv2.getRotationMatrix2D((cx, cy), angle_deg, 1.0)
    cos = abs(matrix[0, 0])
    sin = abs(matrix[0, 1])

    # Small tolerance keeps exact sizes from rounding up a pixel
    new_w = max(1, int(math.ceil(h * sin + w * cos - 1e-6)))
    new_h = max(1, int(math.ceil(h * cos + w * sin - 1e-6)))

    matrix[0, 2] += new_w / 2.0 - cx
    matrix[1, 2] += new_h / 2.0 - cy

    return cv2.warpAffine(
        image,
        matrix,
        (new_w, new_h),
        flags=cv2.INTER_LINEAR,
        borderMode=cv2.BORDER_CONSTANT,
        borderValue=(0, 0, 0),
    )


def square_crop_box(bbox: BBox, img_width: int, img_height: int) -> Optional[BBox]:
    """Grow a face box into a square and clamp it to the image.

    The shorter side is extended to match the longer one, with the added
    margin split evenly on both sides. The result is then clamped: the origin
    never goes negative and the box never extends past the image. A box
    touching an edge can therefore end up narrower than square.

    Args:
        bbox: Face bounding box in pixels
        img_width: Image width in pixels
        img_height: Image height in pixels

    Returns:
        Crop box, or None if nothing of it lies inside the image.
    """
    x = float(bbox.x1)
    y = float(bbox.y1)
    width = float(bbox.width)
    height = float(bbox.height)

    size_diff = abs(width - height)
    if width > height:
        y -= size_diff / 2.0
        height = width
    else:
        x -= size_diff / 2.0
        width = height

    x = max(x, 0.0)
    y = max(y, 0.0)
    width = min(width, img_width - x)
    height = min(height, img_height - y)

    x1 = int(round(x))
    y1 = int(round(y))
    x2 = int(round(x + width))
    y2 = int(round(y + height))

    if x2 <= x1 or y2 <= y1:
        return None

    return BBox(x1=x1, y1=y1, x2=x2, y2=y2)


class FaceAligner:
    """Deskews the first detected face and crops a square around it.

    Workflow:
    1. Decode the image upright (EXIF orientation applied)
    2. Detect faces, take the first one, read its eye landmarks
    3. Rotate the whole image so the eyes are level
    4. Detect again on the rotated image and take the first box
    5. Square the box, clamp it, crop

    Every failure returns None; there is no partial result.

    Attributes:
        detector: Face detection capability

    Example:
        >>> aligner = FaceAligner(detector)
        >>> face = aligner.align("probe.jpg")
        >>> if face is not None:
        ...     assert face.shape[0] == face.shape[1]
    """

    def __init__(self, detector: Detector):
        self.detector = detector

    def align(self, image: ImageSource) -> Optional[np.ndarray]:
        """Align the first face in an image.

        Args:
            image: BGR array, file path or encoded bytes

        Returns:
            Square (or edge-clamped) BGR face crop, or None if no face with
            eye landmarks was found.
        """
        frame = load_image(image)
        if frame is None:
            logger.debug("Image could not be decoded")
            return None

        detections = self.detector.detect(frame)
        if not detections:
            logger.debug("No face detected")
            return None

        face = detections[0]
        if face.left_eye is None or face.right_eye is None:
            logger.debug("First face has no eye landmarks")
            return None

        angle = eye_angle(face.left_eye, face.right_eye)
        rotated = rotate_bound(frame, math.degrees(angle))

        # Landmarks move with the rotation, so the face is located again
        detections = self.detector.detect(rotated)
        if not detections:
            logger.debug("No face detected after rotation")
            return None

        h, w = rotated.shape[:2]
        box = square_crop_box(detections[0].bbox, w, h)
        if box is None:
            logger.debug(f"Face box {detections[0].bbox} lies outside the image")
            return None

        crop = rotated[box.y1 : box.y2, box.x1 : box.x2].copy()
        logger.debug(
            f"Aligned face: angle={math.degrees(angle):.1f}deg, crop={box}"
        )
        return crop

    def __repr__(self) -> str:
        return f"FaceAligner(detector={self.detector!r})"

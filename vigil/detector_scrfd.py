"""Face detection backed by InsightFace's SCRFD model.

Only the detection module of the model pack is loaded; recognition is done by
the separate ONNX embedder. Each face comes back as a pixel-space box (top-left
origin) plus five landmarks, the first two being the eyes.
"""

from __future__ import annotations

from typing import List, Sequence

import numpy as np
from insightface.app import FaceAnalysis

from vigil.config import Config
from vigil.interfaces import BBox, Detection
from vigil.logging_config import get_logger
from vigil.utils import onnx_providers

logger = get_logger(__name__)

DEFAULT_DET_SIZE = (640, 640)
DEFAULT_DET_THRESH = 0.5


class SCRFDDetector:
    """Detector used by the aligner, both before and after deskewing.

    Faces are reported in the order SCRFD yields them. The aligner relies on
    that order ("first face wins"), so nothing here re-ranks them.

    Attributes:
        app: InsightFace FaceAnalysis restricted to detection
        ctx_id: Device context (-1=CPU, 0+=GPU)
        det_size: Network input size as (width, height)
        det_thresh: Minimum SCRFD confidence for a face to be reported

    Example:
        >>> detector = SCRFDDetector(get_config())
        >>> faces = detector.detect(photo)
        >>> eyes = (faces[0].left_eye, faces[0].right_eye) if faces else None
    """

    def __init__(
        self,
        config: Config,
        det_size: Sequence[int] = DEFAULT_DET_SIZE,
        det_thresh: float = DEFAULT_DET_THRESH,
    ):
        """Load the detection model from the configured pack.

        Raises:
            RuntimeError: If the model pack cannot be loaded.
        """
        self.ctx_id = config.ctx_id
        self.det_size = tuple(det_size)
        self.det_thresh = det_thresh

        device = f"GPU:{config.ctx_id}" if config.ctx_id >= 0 else "CPU"
        logger.info(
            f"Loading SCRFD from '{config.model_pack}' on {device} "
            f"(det_size={self.det_size}, det_thresh={det_thresh})"
        )

        try:
            self.app = FaceAnalysis(
                name=config.model_pack,
                allowed_modules=["detection"],
                providers=onnx_providers(config.ctx_id),
            )
            self.app.prepare(ctx_id=config.ctx_id, det_thresh=det_thresh, det_size=self.det_size)
        except Exception as e:
            logger.error(f"SCRFD could not be loaded: {e}", exc_info=True)
            raise RuntimeError(f"Could not load face detector '{config.model_pack}': {e}") from e

        logger.info("SCRFD ready")

    @staticmethod
    def _to_detection(face, img_width: int, img_height: int) -> Detection:
        """Convert one InsightFace result into a clamped Detection."""
        x1, y1, x2, y2 = (int(round(float(v))) for v in face.bbox)
        bbox = BBox(x1=x1, y1=y1, x2=x2, y2=y2).clamp(img_width, img_height)

        kps = getattr(face, "kps", None)
        if kps is not None:
            kps = np.asarray(kps, dtype=np.float32).reshape(-1, 2)

        return Detection(bbox=bbox, kps=kps, score=float(np.clip(face.det_score, 0.0, 1.0)))

    def detect(self, frame_bgr: np.ndarray) -> List[Detection]:
        """Find faces in a BGR image.

        Returns:
            Detections in model order; empty when there is no face, the frame
            is empty, or the model raised.
        """
        if frame_bgr is None or frame_bgr.size == 0:
            logger.warning("Detector received an empty image")
            return []

        try:
            faces = self.app.get(frame_bgr)
        except Exception as e:
            logger.error(f"SCRFD inference failed: {e}", exc_info=True)
            return []

        img_height, img_width = frame_bgr.shape[:2]
        detections = [self._to_detection(face, img_width, img_height) for face in faces]

        logger.debug(f"SCRFD found {len(detections)} face(s) in {img_width}x{img_height} image")
        return detections

    def __repr__(self) -> str:
        return (
            f"SCRFDDetector(ctx_id={self.ctx_id}, det_size={self.det_size}, "
            f"det_thresh={self.det_thresh})"
        )

"""Unit tests for the pipeline context."""

from __future__ import annotations

import tempfile
from pathlib import Path
from unittest.mock import Mock

import numpy as np
import pytest

from vigil.config import default_categories
from vigil.interfaces import BBox, Detection
from vigil.pipeline import FacePipeline
from vigil.store import EmbeddingStore, SaveStatus


@pytest.fixture
def mock_detector():
    """Create a mock detector reporting one level face."""
    kps = np.array([[70, 90], [95, 90], [82, 110], [72, 125], [92, 125]], dtype=np.float32)
    detector = Mock()
    detector.detect.return_value = [Detection(bbox=BBox(50, 60, 110, 140), kps=kps, score=0.95)]
    return detector


@pytest.fixture
def mock_embedder():
    """Create a mock embedder."""
    embedder = Mock()
    embedder.embed.return_value = np.array([1.0, 0.0, 0.0, 0.0], dtype=np.float32)
    return embedder


@pytest.fixture
def pipeline(mock_detector, mock_embedder):
    """Create a pipeline over a temporary store."""
    with tempfile.TemporaryDirectory() as tmpdir:
        data_dir = Path(tmpdir)
        store = EmbeddingStore(default_categories(data_dir), data_dir / "ComparisonFaces")
        yield FacePipeline.assemble(mock_detector, mock_embedder, store)


@pytest.fixture
def test_frame():
    """Create a test photo (200x200 BGR)."""
    np.random.seed(31)
    return np.random.randint(0, 255, (200, 200, 3), dtype=np.uint8)


def test_assemble_wires_components(pipeline, mock_embedder):
    """Test that the engine shares the pipeline's components."""
    assert pipeline.engine.aligner is pipeline.aligner
    assert pipeline.engine.embedder is mock_embedder
    assert pipeline.engine.store is pipeline.store


def test_process(pipeline, test_frame):
    """Test align + embed of one photo."""
    aligned, embedding = pipeline.process(test_frame)

    assert aligned.shape == (80, 80, 3)
    assert np.allclose(embedding, [1.0, 0.0, 0.0, 0.0])


def test_process_no_face(pipeline, mock_detector, test_frame):
    """Test that a photo without faces gives None."""
    mock_detector.detect.return_value = []

    assert pipeline.process(test_frame) is None


def test_enroll_then_duplicate(pipeline, test_frame):
    """Test that enrolling the same photo twice stores it once."""
    first = pipeline.enroll(test_frame, "regular")
    second = pipeline.enroll(test_frame, "regular")

    assert first.status is SaveStatus.SAVED
    assert second.status is SaveStatus.DUPLICATE
    assert pipeline.store.count("regular") == 1


def test_enroll_no_face(pipeline, mock_embedder, test_frame):
    """Test that a failed embedding is not stored."""
    mock_embedder.embed.return_value = None

    assert pipeline.enroll(test_frame, "regular") is None
    assert pipeline.store.count("regular") == 0


def test_enroll_unknown_category(pipeline, mock_detector, test_frame):
    """Test that the category is checked before any detection work."""
    with pytest.raises(KeyError):
        pipeline.enroll(test_frame, "nope")

    mock_detector.detect.assert_not_called()


def test_compare_after_enroll(pipeline, test_frame):
    """Test the full enroll -> compare round."""
    result = pipeline.enroll(test_frame, "retail")

    comparison = pipeline.compare_faces(test_frame)

    assert comparison.message == "matches found: 1"
    assert comparison.matches[0].key == result.key
    assert comparison.matches[0].category == "retail"

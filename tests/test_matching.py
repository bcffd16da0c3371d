"""Unit tests for the match engine."""

from __future__ import annotations

import tempfile
from pathlib import Path
from unittest.mock import Mock

import numpy as np
import pytest

from vigil.config import default_categories
from vigil.matching import (
    NO_FACE_MESSAGE,
    NO_MATCHES_MESSAGE,
    MatchEngine,
)
from vigil.store import EmbeddingStore

DIM = 8


def unit(index: int, dim: int = DIM) -> np.ndarray:
    vec = np.zeros(dim, dtype=np.float32)
    vec[index] = 1.0
    return vec


def at_similarity(cos: float, dim: int = DIM) -> np.ndarray:
    """Unit vector whose cosine similarity to e_0 is ``cos``."""
    vec = np.zeros(dim, dtype=np.float64)
    vec[0] = cos
    vec[1] = np.sqrt(1.0 - cos * cos)
    return vec


@pytest.fixture
def data_dir():
    """Create a temporary data directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def store(data_dir):
    """Create an empty store with the default categories."""
    return EmbeddingStore(default_categories(data_dir), data_dir / "ComparisonFaces")


@pytest.fixture
def test_face():
    """Create a test aligned face (96x96 BGR)."""
    np.random.seed(21)
    return np.random.randint(0, 255, (96, 96, 3), dtype=np.uint8)


@pytest.fixture
def probe_frame():
    """Create a probe photo (240x320 BGR)."""
    np.random.seed(22)
    return np.random.randint(0, 255, (240, 320, 3), dtype=np.uint8)


@pytest.fixture
def mock_aligner(test_face):
    """Create a mock aligner that always finds a face."""
    aligner = Mock()
    aligner.align.return_value = test_face
    return aligner


@pytest.fixture
def mock_embedder():
    """Create a mock embedder returning e_0 for every face."""
    embedder = Mock()
    embedder.embed.return_value = unit(0)
    return embedder


@pytest.fixture
def engine(mock_aligner, mock_embedder, store):
    """Create a match engine over the mocks and a real store."""
    return MatchEngine(aligner=mock_aligner, embedder=mock_embedder, store=store)


def _comparison_files(data_dir: Path) -> list:
    return list((data_dir / "ComparisonFaces").glob("*.jpg"))


def test_default_categories_exclude_user_custom(engine):
    """Test that user-custom faces are not scanned by default."""
    assert engine.categories == ["regular", "retail", "unsolved"]
    assert engine.threshold == pytest.approx(0.8)


def test_no_face(engine, store, mock_aligner, mock_embedder, probe_frame, data_dir):
    """Test that a probe without a face gives the no-face message."""
    mock_aligner.align.return_value = None

    result = engine.compare_faces(probe_frame)

    assert result.matches == []
    assert result.message == NO_FACE_MESSAGE
    assert not result.found
    mock_embedder.embed.assert_not_called()
    assert _comparison_files(data_dir) == []
    assert all(store.count(c) == 0 for c in store.categories)


def test_embedding_failed(engine, mock_embedder, probe_frame):
    """Test that an embedding failure gives the no-face message."""
    mock_embedder.embed.return_value = None

    result = engine.compare_faces(probe_frame)

    assert result.message == NO_FACE_MESSAGE


def test_aligner_error_is_contained(engine, mock_aligner, probe_frame):
    """Test that collaborator exceptions become a no-face result."""
    mock_aligner.align.side_effect = RuntimeError("detector crashed")

    result = engine.compare_faces(probe_frame)

    assert result.matches == []
    assert result.message == NO_FACE_MESSAGE


def test_undecodable_probe(engine, mock_aligner):
    """Test that bytes that are not an image never reach the aligner."""
    result = engine.compare_faces(b"not an image")

    assert result.message == NO_FACE_MESSAGE
    mock_aligner.align.assert_not_called()


def test_empty_store(engine, probe_frame, data_dir):
    """Test that an empty store gives no matches but keeps the audit snapshot."""
    result = engine.compare_faces(probe_frame)

    assert result.matches == []
    assert result.message == NO_MATCHES_MESSAGE
    assert len(_comparison_files(data_dir)) == 1


def test_threshold_is_inclusive(engine, store, mock_embedder, test_face, probe_frame):
    """Test that a similarity of exactly 0.8 counts as a match."""
    store.save(unit(0), test_face, "regular")
    mock_embedder.embed.return_value = np.array(
        [0.8, 0.6, 0, 0, 0, 0, 0, 0], dtype=np.float32
    )

    result = engine.compare_faces(probe_frame)

    assert result.message == "matches found: 1"
    assert result.matches[0].similarity == pytest.approx(0.8, abs=1e-6)


def test_below_threshold(engine, store, mock_embedder, test_face, probe_frame):
    """Test that a similarity below the threshold is not a match."""
    store.save(unit(0), test_face, "regular")
    mock_embedder.embed.return_value = at_similarity(0.79)

    result = engine.compare_faces(probe_frame)

    assert result.message == NO_MATCHES_MESSAGE


def test_matches_across_categories_sorted(engine, store, test_face, probe_frame):
    """Test that matches from all categories come back highest first."""
    store.save(at_similarity(0.85), test_face, "regular")
    store.save(at_similarity(0.9), test_face, "retail")
    store.save(at_similarity(0.3), test_face, "unsolved")

    result = engine.compare_faces(probe_frame)

    assert result.message == "matches found: 2"
    assert [m.category for m in result.matches] == ["retail", "regular"]
    assert result.matches[0].similarity == pytest.approx(0.9, abs=1e-6)
    assert result.matches[1].similarity == pytest.approx(0.85, abs=1e-6)
    assert result.matches[0].image.shape == test_face.shape


def test_multiple_matches_in_one_category(engine, store, test_face, probe_frame):
    """Test ordering among matches of a single category."""
    store.save(at_similarity(0.82), test_face, "regular")
    store.save(at_similarity(0.95), test_face, "regular")

    result = engine.compare_faces(probe_frame)

    similarities = [m.similarity for m in result.matches]
    assert similarities == sorted(similarities, reverse=True)
    assert len(similarities) == 2


def test_unreadable_image_skipped(engine, store, test_face, probe_frame):
    """Test that entries whose image is gone are left out."""
    key = store.save(unit(0), test_face, "regular")
    store.image_path(key, "regular").unlink()

    result = engine.compare_faces(probe_frame)

    assert result.message == NO_MATCHES_MESSAGE


def test_user_custom_opt_in(engine, store, test_face, probe_frame):
    """Test that user-custom faces are found only when asked for."""
    key = store.save(unit(0), test_face, "user_custom")

    assert engine.compare_faces(probe_frame).message == NO_MATCHES_MESSAGE

    result = engine.compare_faces(probe_frame, categories=["user_custom"])
    assert result.matches[0].key == key
    assert result.matches[0].category == "user_custom"


def test_threshold_override(engine, store, test_face, probe_frame):
    """Test that a per-call threshold replaces the default."""
    store.save(at_similarity(0.7), test_face, "regular")

    assert not engine.compare_faces(probe_frame).found
    assert engine.compare_faces(probe_frame, threshold=0.65).found


def test_invalid_threshold(engine, probe_frame, mock_aligner, mock_embedder, store):
    """Test that thresholds outside [0, 1] are rejected."""
    with pytest.raises(ValueError):
        engine.compare_faces(probe_frame, threshold=1.5)

    with pytest.raises(ValueError):
        engine.set_threshold(-0.1)

    with pytest.raises(ValueError):
        MatchEngine(mock_aligner, mock_embedder, store, threshold=2.0)


def test_set_threshold(engine):
    """Test updating the default threshold."""
    engine.set_threshold(0.9)

    assert engine.threshold == pytest.approx(0.9)


def test_search_ignores_other_dimensions(engine, store, test_face):
    """Test that vectors of another length never match, even at threshold 0."""
    store.save(np.array([1.0, 0.0, 0.0], dtype=np.float32), test_face, "regular")
    key = store.save(unit(3), test_face, "retail")

    matches = engine.search(unit(1), threshold=0.0)

    assert [m.key for m in matches] == [key]
    assert matches[0].similarity == pytest.approx(0.0, abs=1e-9)


def test_search_unknown_category(engine):
    """Test that scanning an unknown category raises KeyError."""
    with pytest.raises(KeyError):
        engine.search(unit(0), categories=["nope"])

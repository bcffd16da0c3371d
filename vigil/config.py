"""Configuration management for the vigil face-matching core.

Settings are read from environment variables (optionally through a ``.env``
file) and collected in a :class:`Config` instance. The category table that
maps each reference store to its index file and image directory also lives
here, so new or test-only categories need no code changes.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# Default reference categories
REGULAR = "regular"
RETAIL = "retail"
UNSOLVED = "unsolved"
USER_CUSTOM = "user_custom"

COMPARISON_DIRNAME = "ComparisonFaces"


@dataclass(frozen=True)
class CategoryConfig:
    """Storage location of one reference category.

    Attributes:
        name: Category name used by callers (e.g. "regular")
        index_file: JSON index mapping key -> {embedding, imageFilename}
        image_dir: Directory holding the category's face JPEGs
        searchable: Whether compare_faces scans this category by default
    """

    name: str
    index_file: Path
    image_dir: Path
    searchable: bool = True


def default_categories(data_dir: Path) -> List[CategoryConfig]:
    """Build the standard category table rooted at ``data_dir``.

    The user-custom category is stored like the others but is left out of
    default searches; callers opt in by naming it explicitly.
    """
    data_dir = Path(data_dir)
    layout = [
        (REGULAR, "WantedFaces", True),
        (RETAIL, "RetailWantedFaces", True),
        (UNSOLVED, "UnknownWantedFaces", True),
        (USER_CUSTOM, "UserCustomFaces", False),
    ]
    return [
        CategoryConfig(
            name=name,
            index_file=data_dir / f"{stem}.json",
            image_dir=data_dir / stem,
            searchable=searchable,
        )
        for name, stem, searchable in layout
    ]


def _env_float(name: str, default: str, low: float, high: float) -> float:
    raw = os.getenv(name, default)
    try:
        value = float(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be a number, got {raw!r}") from e
    if not low <= value <= high:
        raise ValueError(f"{name} must be between {low} and {high}, got {value}")
    return value


def _env_int(name: str, default: str, minimum: int) -> int:
    raw = os.getenv(name, default)
    try:
        value = int(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from e
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got {value}")
    return value


@dataclass
class Config:
    """Application configuration loaded from environment variables.

    Attributes:
        data_dir: Root directory for indexes, face images and audit snapshots
        model_path: Path of the ONNX embedding model
        ctx_id: Device context ID for the detector (-1 for CPU, 0+ for GPU)
        model_pack: InsightFace model pack used for face detection
        match_threshold: Minimum cosine similarity for a match (inclusive)
        dedup_threshold: Similarity above which a save is rejected as duplicate
        jpeg_quality: JPEG quality (0-100) for stored faces
        embedding_dim: Expected embedding dimension
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        download_workers: Parallel downloads during URL ingestion
        download_timeout: Per-request timeout in seconds
        categories: Category table, in search order
    """

    data_dir: Path
    model_path: Path
    ctx_id: int
    model_pack: str
    match_threshold: float
    dedup_threshold: float
    jpeg_quality: int
    embedding_dim: int
    log_level: str
    download_workers: int
    download_timeout: float
    categories: List[CategoryConfig] = field(default_factory=list)

    @property
    def comparison_dir(self) -> Path:
        """Directory receiving audit copies of aligned probe faces."""
        return self.data_dir / COMPARISON_DIRNAME

    @property
    def category_map(self) -> Dict[str, CategoryConfig]:
        """Category table keyed by name."""
        return {category.name: category for category in self.categories}

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Returns:
            Config instance with values from environment or defaults.

        Raises:
            ValueError: If an environment variable holds an invalid value.
        """
        project_root = Path(__file__).parent.parent

        data_dir = Path(os.getenv("VIGIL_DATA_DIR", str(project_root / "data")))
        model_path = Path(
            os.getenv("MODEL_PATH", str(project_root / "models" / "arcface.onnx"))
        )

        ctx_id = _env_int("CTX_ID", "-1", minimum=-1)

        model_pack = os.getenv("MODEL_PACK", "buffalo_l")
        valid_packs = ["buffalo_l", "buffalo_m", "buffalo_s", "buffalo_sc"]
        if model_pack not in valid_packs:
            raise ValueError(f"MODEL_PACK must be one of {valid_packs}, got {model_pack}")

        match_threshold = _env_float("MATCH_THRESH", "0.8", 0.0, 1.0)
        dedup_threshold = _env_float("DEDUP_THRESH", "0.99", 0.0, 1.0)

        jpeg_quality = _env_int("JPEG_QUALITY", "90", minimum=1)
        if jpeg_quality > 100:
            raise ValueError(f"JPEG_QUALITY must be <= 100, got {jpeg_quality}")

        embedding_dim = _env_int("EMBEDDING_DIM", "512", minimum=1)

        log_level = os.getenv("LOG_LEVEL", "INFO").upper()
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if log_level not in valid_levels:
            raise ValueError(f"LOG_LEVEL must be one of {valid_levels}, got {log_level}")

        download_workers = _env_int("DOWNLOAD_WORKERS", "8", minimum=1)
        download_timeout = _env_float("DOWNLOAD_TIMEOUT", "30", 0.1, 600.0)

        return cls(
            data_dir=data_dir,
            model_path=model_path,
            ctx_id=ctx_id,
            model_pack=model_pack,
            match_threshold=match_threshold,
            dedup_threshold=dedup_threshold,
            jpeg_quality=jpeg_quality,
            embedding_dim=embedding_dim,
            log_level=log_level,
            download_workers=download_workers,
            download_timeout=download_timeout,
            categories=default_categories(data_dir),
        )

    def __repr__(self) -> str:
        """Return string representation of config."""
        return (
            f"Config(\n"
            f"  Data dir: {self.data_dir},\n"
            f"  Model: {self.model_path},\n"
            f"  Device: {'GPU' if self.ctx_id >= 0 else 'CPU'}:{self.ctx_id},\n"
            f"  Match threshold: {self.match_threshold},\n"
            f"  Dedup threshold: {self.dedup_threshold},\n"
            f"  Categories: {[c.name for c in self.categories]},\n"
            f"  Log Level: {self.log_level}\n"
            f")"
        )


# Global config instance (lazy-loaded)
_config: Config | None = None


def get_config() -> Config:
    """Get the cached config instance, loading it on first use."""
    global _config
    if _config is None:
        _config = Config.from_env()
    return _config

"""Mirror a Nix binary cache, following narinfo references to the full closure."""

from .closure import ClosureTracker, CompletionRecord
from .config import Config, load_config
from .engine import Mirror, MirrorSummary, open_session
from .ids import ArtifactId, parse_artifact_id, seeds_from_lines
from .narinfo import ArtifactMetadata, ContentHash, parse_narinfo

__all__ = [
    "ArtifactId",
    "ArtifactMetadata",
    "ClosureTracker",
    "CompletionRecord",
    "Config",
    "ContentHash",
    "Mirror",
    "MirrorSummary",
    "load_config",
    "open_session",
    "parse_artifact_id",
    "parse_narinfo",
    "seeds_from_lines",
]

__version__ = "0.2.0"

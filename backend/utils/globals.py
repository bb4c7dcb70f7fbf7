"""
Process-wide environment bootstrap.

Loads a ``.env`` file from the repository root (if present) before any
configuration is read from the environment.
"""

from pathlib import Path
from dotenv import load_dotenv

ENV_PATH = Path(__file__).parent.parent.parent / ".env"


def load_environment(env_path: Path = ENV_PATH) -> bool:
    """Load ``env_path`` into ``os.environ`` without overriding existing values."""
    if env_path.exists():
        return load_dotenv(env_path, override=False)
    return False

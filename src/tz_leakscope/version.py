"""Release version and CLI help footer."""

from __future__ import annotations

import platform

__all__ = ["PROJECT_URL", "__version__", "build_help_epilog"]

# Bumped by hand on release; pyproject.toml reads the same number.
__version__ = "0.1.0"
PROJECT_URL = "https://github.com/taggedzi/tz-leakscope"


def build_help_epilog() -> str:
    """Footer for `--help`: where to report problems and what is running."""
    return "\n".join(
        (
            f"Project URL: {PROJECT_URL}",
            f"Python: {platform.python_implementation()} {platform.python_version()}",
            f"Platform: {platform.platform()}",
            f"tz-leakscope {__version__}",
        )
    )

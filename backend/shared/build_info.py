"""Build metadata exposed at runtime.

APP_VERSION and GIT_COMMIT are set via environment variables in CI.
Without them the version comes from the installed distribution and the
commit is reported as "dev".
"""

import os
from importlib import metadata

DISTRIBUTION_NAME = "dice-sync"


def _installed_version() -> str:
    try:
        return metadata.version(DISTRIBUTION_NAME)
    except metadata.PackageNotFoundError:
        return "dev"


APP_VERSION: str = os.environ.get("APP_VERSION") or _installed_version()
GIT_COMMIT: str = os.environ.get("GIT_COMMIT") or "dev"

import subprocess
import logging
from importlib import metadata

logger = logging.getLogger(__name__)

DISTRIBUTION_NAME = 'archive-backup'


def get_version():
    """Get version from the installed distribution, else from git tags."""
    try:
        return metadata.version(DISTRIBUTION_NAME)
    except metadata.PackageNotFoundError:
        pass

    try:
        tag = subprocess.check_output(
            ['git', 'describe', '--tags', '--abbrev=0'],
            stderr=subprocess.DEVNULL,
            text=True
        ).strip()

        # Check for uncommitted changes
        has_changes = subprocess.call(
            ['git', 'diff-index', '--quiet', 'HEAD', '--'],
            stderr=subprocess.DEVNULL
        ) != 0

        return f"{tag}-dev" if has_changes else tag

    except (subprocess.CalledProcessError, FileNotFoundError):
        logger.debug("Could not determine version from git, using fallback")
        return "0.0.0"  # Fallback version


__version__ = get_version()

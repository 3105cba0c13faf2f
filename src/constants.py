"""Constants used in the project."""

from enum import Enum


class SourceKind(Enum):
    """Kinds of package source locations.

    Args:
        Enum (string): Source kinds understood by the fetcher.
    """

    GIT = "git"
    ARCHIVE = "archive"
    LOCAL = "local"


class Constants:  # pylint: disable=too-few-public-methods
    """General constants used in the project.
    Data holder for configuration constants; not intended to provide behavior.
    """

    INDEX_URL = "https://index.rockyard.dev/"
    INDEX_MANIFEST = "manifest.json"
    DESCRIPTOR_SUFFIX = ".toml"
    LOCKFILE_VERSION = 1
    LOG_FORMAT = "[%(levelname)s] %(message)s"
    ENV_LOG_LEVEL = "ROCKYARD_LOG_LEVEL"
    ENV_CONFIG = "ROCKYARD_CONFIG"
    DEFAULT_CONFIG_PATH = "~/.config/rockyard/config.yaml"
    DEFAULT_STORE_PATH = "~/.cache/rockyard/store"

    REQUEST_TIMEOUT = 30  # Timeout in seconds for all HTTP requests
    HTTP_RETRY_MAX = 3
    HTTP_RETRY_BASE_DELAY_SEC = 0.3
    HTTP_CACHE_TTL_SEC = 300
    DOWNLOAD_CHUNK_SIZE = 64 * 1024
    INDEX_CACHE_TTL_SEC = 600

    FETCH_CONCURRENCY = 4
    BUILD_CONCURRENCY = 2
    STORE_LOCK_TIMEOUT_SEC = 600.0
    STORE_LOCK_POLL_SEC = 0.05
    LOG_EXCERPT_LINES = 40

    STORE_METADATA_FILE = ".rockyard-entry.json"
    STORE_LOCK_DIR = ".locks"
    STORE_TMP_DIR = ".tmp"

    # Artifact layout inside a store entry
    LUA_DIR = "lua"
    LIB_DIR = "lib"
    BIN_DIR = "bin"

    DEFAULT_RUNTIME_VERSION = "5.4"
    SCRIPT_EXTENSIONS = [".lua"]
    VCS_DIRS = [".git", ".hg", ".svn"]
    ARCHIVE_SUFFIXES = [".zip", ".tar", ".tar.gz", ".tgz", ".tar.bz2", ".tbz2", ".tar.xz", ".txz"]

    # Platform families used by descriptor platform predicates
    PLATFORM_FAMILIES = {
        "unix": ["linux", "macosx", "freebsd", "openbsd", "netbsd", "solaris", "cygwin"],
        "bsd": ["freebsd", "openbsd", "netbsd", "macosx"],
        "windows": ["win32", "mingw32"],
    }

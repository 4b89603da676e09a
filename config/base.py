# config/base.py
import os
from datetime import timedelta


def _coerce_bool(value, default=False):
    """Convert environment-style truthy/falsey values to bool."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    value_str = str(value).strip().lower()
    if value_str in {"1", "true", "yes", "on"}:
        return True
    if value_str in {"0", "false", "no", "off"}:
        return False
    return default


def _parse_adapter_list(value):
    """
    Parse a comma-separated adapter list while keeping order and removing duplicates.

    Returns:
        tuple[str, ...]: Normalized adapter identifiers.
    """
    if not value:
        return ()

    seen = set()
    adapters = []
    for raw_item in value.split(","):
        item = raw_item.strip().lower()
        if not item or item in seen:
            continue
        seen.add(item)
        adapters.append(item)
    return tuple(adapters)


def _parse_name_list(value):
    """Parse a comma-separated list of display names, keeping their case."""
    if not value:
        return ()
    names = []
    for raw_item in value.split(","):
        item = raw_item.strip()
        if item and item not in names:
            names.append(item)
    return tuple(names)


def _parse_int(value, default, *, minimum=None, maximum=None):
    try:
        number = int(value) if value not in (None, "") else default
    except (TypeError, ValueError):
        number = default
    if minimum is not None and number < minimum:
        number = minimum
    if maximum is not None and number > maximum:
        number = maximum
    return number


def _parse_float(value, default, *, minimum=0.0, maximum=1.0):
    try:
        number = float(value) if value not in (None, "") else default
    except (TypeError, ValueError):
        number = default
    return min(max(number, minimum), maximum)


class Config:
    _flask_env = os.environ.get("FLASK_ENV", "development")
    _is_testing = _flask_env == "testing"
    _is_production = _flask_env == "production"

    SECRET_KEY = os.environ.get("SECRET_KEY")

    # Only require SECRET_KEY in production mode
    if not SECRET_KEY and _is_production:
        raise ValueError(
            "SECRET_KEY environment variable is required in production. "
            'Generate with: python -c "import secrets; print(secrets.token_hex(32))"'
        )

    if not SECRET_KEY and not _is_testing:
        import warnings

        warnings.warn(
            "SECRET_KEY not set. Using default for development only. "
            "Set SECRET_KEY before deploying.",
            UserWarning,
        )
        SECRET_KEY = "dev-secret-key-change-in-production"

    if not SECRET_KEY:
        SECRET_KEY = "test-secret-key-placeholder"

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {}

    # Importer configuration
    IMPORTER_ENABLED = _coerce_bool(os.environ.get("IMPORTER_ENABLED"), default=False)
    IMPORTER_ADAPTERS = _parse_adapter_list(os.environ.get("IMPORTER_ADAPTERS", "csv,xlsx"))

    if IMPORTER_ENABLED and not IMPORTER_ADAPTERS:
        raise ValueError(
            "IMPORTER_ENABLED is true but IMPORTER_ADAPTERS is empty. Provide at least one adapter name."
        )

    IMPORTER_WORKER_ENABLED = _coerce_bool(os.environ.get("IMPORTER_WORKER_ENABLED"), default=False)
    # A queued task that never reported back stops blocking its batch after this long.
    IMPORTER_TASK_TIMEOUT_SECONDS = _parse_int(os.environ.get("IMPORTER_TASK_TIMEOUT_SECONDS"), 900, minimum=30)
    CELERY_BROKER_URL = os.environ.get("CELERY_BROKER_URL")
    CELERY_RESULT_BACKEND = os.environ.get("CELERY_RESULT_BACKEND")
    CELERY_SQLITE_PATH = os.environ.get("CELERY_SQLITE_PATH")
    CELERY_CONFIG = os.environ.get("CELERY_CONFIG")

    IMPORTER_MAX_UPLOAD_MB = _parse_int(os.environ.get("IMPORTER_MAX_UPLOAD_MB"), 25, minimum=1)
    IMPORTER_MAX_ROWS = _parse_int(os.environ.get("IMPORTER_MAX_ROWS"), 10000, minimum=1)
    IMPORTER_BATCHES_PAGE_SIZE_DEFAULT = _parse_int(
        os.environ.get("IMPORTER_BATCHES_PAGE_SIZE_DEFAULT"), 25, minimum=5, maximum=500
    )
    IMPORTER_HEADER_PATTERNS_PATH = os.environ.get("IMPORTER_HEADER_PATTERNS_PATH")

    # Mapping and classifier
    IMPORTER_MAPPING_CONFIDENCE_THRESHOLD = _parse_float(
        os.environ.get("IMPORTER_MAPPING_CONFIDENCE_THRESHOLD"), 0.7
    )
    IMPORTER_CLASSIFIER_URL = os.environ.get("IMPORTER_CLASSIFIER_URL")
    IMPORTER_CLASSIFIER_API_KEY = os.environ.get("IMPORTER_CLASSIFIER_API_KEY")
    IMPORTER_CLASSIFIER_ENABLED = _coerce_bool(
        os.environ.get("IMPORTER_CLASSIFIER_ENABLED"),
        default=bool(IMPORTER_CLASSIFIER_URL),
    )
    try:
        IMPORTER_CLASSIFIER_TIMEOUT_SECONDS = float(os.environ.get("IMPORTER_CLASSIFIER_TIMEOUT_SECONDS", "10"))
    except ValueError:
        IMPORTER_CLASSIFIER_TIMEOUT_SECONDS = 10.0

    # Validation
    IMPORTER_KNOWN_CATEGORIES = _parse_name_list(os.environ.get("IMPORTER_KNOWN_CATEGORIES", ""))

    # Commit
    IMPORTER_COMMIT_GROUP_SIZE = _parse_int(os.environ.get("IMPORTER_COMMIT_GROUP_SIZE"), 50, minimum=1)
    IMPORTER_COMMIT_CONCURRENCY = _parse_int(
        os.environ.get("IMPORTER_COMMIT_CONCURRENCY"), 4, minimum=1, maximum=32
    )
    IMPORTER_UPDATE_ON_DUPLICATE = _coerce_bool(os.environ.get("IMPORTER_UPDATE_ON_DUPLICATE"), default=True)

    # Session configuration
    PERMANENT_SESSION_LIFETIME = timedelta(days=7)
    SESSION_COOKIE_SECURE = False
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = "Lax"


class DevelopmentConfig(Config):
    DEBUG = True
    _config_dir = os.path.dirname(os.path.abspath(__file__))
    _project_root = os.path.dirname(_config_dir)
    instance_path = os.path.join(_project_root, "instance")

    if not os.path.exists(instance_path):
        os.makedirs(instance_path, exist_ok=True)

    # SQLite URIs need forward slashes, even on Windows
    db_path = os.path.join(instance_path, "roster_dev.db").replace("\\", "/")
    db_uri = f"sqlite:///{db_path}"

    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL", db_uri)
    SQLALCHEMY_ECHO = _coerce_bool(os.environ.get("SQLALCHEMY_ECHO"), default=False)
    if SQLALCHEMY_DATABASE_URI.startswith("sqlite"):
        SQLALCHEMY_ENGINE_OPTIONS = {
            "connect_args": {
                "check_same_thread": False,
                "timeout": 5,
            }
        }
    else:
        SQLALCHEMY_ENGINE_OPTIONS = {}


class TestingConfig(Config):
    TESTING = True
    SECRET_KEY = os.environ.get("SECRET_KEY", "test-secret-key-for-testing-only")
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SQLALCHEMY_ECHO = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "connect_args": {
            "check_same_thread": False,
            "timeout": 5,
        }
    }
    IMPORTER_CLASSIFIER_ENABLED = False


class ProductionConfig(Config):
    DEBUG = False
    uri = os.environ.get("DATABASE_URL")
    if uri and uri.startswith("postgres://"):
        uri = uri.replace("postgres://", "postgresql://", 1)
    SQLALCHEMY_DATABASE_URI = uri
    SQLALCHEMY_ECHO = False
    SESSION_COOKIE_SECURE = True

# config/base.py
import os


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


def _parse_int(value, default, *, minimum=None, maximum=None):
    """
    Parse an integer setting, falling back to ``default`` when invalid or out of bounds.
    """
    if value is None or str(value).strip() == "":
        return default
    try:
        number = int(str(value).strip())
    except ValueError:
        return default
    if minimum is not None and number < minimum:
        return default
    if maximum is not None and number > maximum:
        return default
    return number


class Config:
    # SECRET_KEY must be set via environment variable in production
    _flask_env = os.environ.get("FLASK_ENV", "development")
    _is_testing = _flask_env == "testing"
    _is_production = _flask_env == "production"

    SECRET_KEY = os.environ.get("SECRET_KEY")

    if not SECRET_KEY and _is_production:
        raise ValueError(
            "SECRET_KEY environment variable is required in production. "
            'Generate with: python -c "import secrets; print(secrets.token_hex(32))"'
        )

    if not SECRET_KEY and not _is_testing:
        import warnings

        warnings.warn(
            "SECRET_KEY not set. Using default for development only. "
            "Set SECRET_KEY environment variable before deploying.",
            UserWarning,
        )
        SECRET_KEY = "dev-secret-key-change-in-production"

    if not SECRET_KEY:
        SECRET_KEY = "test-secret-key-placeholder"

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {}

    # Reconciliation engine
    REGISTRY_APPLY_CHUNK_SIZE = _parse_int(os.environ.get("REGISTRY_APPLY_CHUNK_SIZE"), 500, minimum=1)
    REGISTRY_MAX_BATCH_ROWS = _parse_int(os.environ.get("REGISTRY_MAX_BATCH_ROWS"), 10000, minimum=1)
    REGISTRY_MAX_UPLOAD_MB = _parse_int(os.environ.get("REGISTRY_MAX_UPLOAD_MB"), 25, minimum=1)
    REGISTRY_MAX_REPORTED_ERRORS = _parse_int(os.environ.get("REGISTRY_MAX_REPORTED_ERRORS"), 50, minimum=1)
    REGISTRY_SIMULATE_SAMPLE_SIZE = _parse_int(os.environ.get("REGISTRY_SIMULATE_SAMPLE_SIZE"), 10, minimum=0)

    # Blob store
    REGISTRY_BLOB_DIR = os.environ.get("REGISTRY_BLOB_DIR")
    REGISTRY_BLOB_BASE_URL = os.environ.get("REGISTRY_BLOB_BASE_URL", "/blobs")

    # Identity headers set by the upstream authentication proxy
    REGISTRY_PRINCIPAL_HEADER = os.environ.get("REGISTRY_PRINCIPAL_HEADER", "X-Principal-Id")
    REGISTRY_ROLE_HEADER = os.environ.get("REGISTRY_ROLE_HEADER", "X-Principal-Role")

    # Listings
    REGISTRY_PAGE_SIZE_DEFAULT = _parse_int(os.environ.get("REGISTRY_PAGE_SIZE_DEFAULT"), 50, minimum=1)
    REGISTRY_PAGE_SIZE_MAX = _parse_int(os.environ.get("REGISTRY_PAGE_SIZE_MAX"), 500, minimum=1)
    if REGISTRY_PAGE_SIZE_DEFAULT > REGISTRY_PAGE_SIZE_MAX:
        REGISTRY_PAGE_SIZE_DEFAULT = REGISTRY_PAGE_SIZE_MAX
    REGISTRY_RECENT_DAYS = _parse_int(os.environ.get("REGISTRY_RECENT_DAYS"), 7, minimum=1)

    MAX_CONTENT_LENGTH = (REGISTRY_MAX_UPLOAD_MB + 1) * 1024 * 1024



class DevelopmentConfig(Config):
    DEBUG = True
    # Get the project root directory (parent of config directory)
    _config_dir = os.path.dirname(os.path.abspath(__file__))
    _project_root = os.path.dirname(_config_dir)
    instance_path = os.path.join(_project_root, "instance")

    if not os.path.exists(instance_path):
        os.makedirs(instance_path, exist_ok=True)

    # SQLite URIs need forward slashes on Windows
    db_path = os.path.join(instance_path, "registry_dev.db")
    db_path_normalized = db_path.replace("\\", "/")
    db_uri = f"sqlite:///{db_path_normalized}"

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


class ProductionConfig(Config):
    DEBUG = False
    uri = os.environ.get("DATABASE_URL")
    if uri and uri.startswith("postgres://"):
        uri = uri.replace("postgres://", "postgresql://", 1)
    SQLALCHEMY_DATABASE_URI = uri
    SQLALCHEMY_ECHO = False

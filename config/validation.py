# config/validation.py

"""
Environment variable validation for the registry application.
Validates required environment variables at startup.
"""

import os
import sys
from typing import List, Tuple


def _blob_dir_error(blob_dir: str) -> str | None:
    if not blob_dir:
        return None
    if os.path.isdir(blob_dir):
        if not os.access(blob_dir, os.W_OK):
            return f"REGISTRY_BLOB_DIR '{blob_dir}' is not writable."
        return None
    parent = os.path.dirname(os.path.abspath(blob_dir))
    if not os.path.isdir(parent) or not os.access(parent, os.W_OK):
        return f"REGISTRY_BLOB_DIR '{blob_dir}' does not exist and cannot be created."
    return None


def validate_environment(flask_env: str = None) -> Tuple[bool, List[str]]:
    """
    Validate required environment variables.

    Args:
        flask_env: Flask environment (development, production, testing)
                  If None, reads from FLASK_ENV environment variable

    Returns:
        Tuple of (is_valid, list_of_errors)
    """
    if flask_env is None:
        flask_env = os.environ.get("FLASK_ENV", "development")

    errors = []

    # Only validate in production
    if flask_env != "production":
        return True, []

    secret_key = os.environ.get("SECRET_KEY", "")
    if not secret_key or secret_key in {"your-secret-key", "your_secret_key"}:
        errors.append(
            "SECRET_KEY is required in production and must not be the default value. "
            'Generate a secure key: python -c "import secrets; print(secrets.token_hex(32))"'
        )

    if not os.environ.get("DATABASE_URL"):
        errors.append(
            "DATABASE_URL is required in production. "
            "Set it to your PostgreSQL connection string."
        )

    blob_error = _blob_dir_error(os.environ.get("REGISTRY_BLOB_DIR", ""))
    if blob_error:
        errors.append(blob_error)

    for key in ("REGISTRY_PRINCIPAL_HEADER", "REGISTRY_ROLE_HEADER"):
        value = os.environ.get(key)
        if value is not None and not value.strip():
            errors.append(f"{key} must not be blank when set.")

    is_valid = len(errors) == 0
    return is_valid, errors


def validate_and_exit(flask_env: str = None) -> None:
    """
    Validate environment variables and exit with error if validation fails.
    Intended to be called at application startup.
    """
    is_valid, errors = validate_environment(flask_env)

    if not is_valid:
        print("=" * 80, file=sys.stderr)
        print("ENVIRONMENT VALIDATION FAILED", file=sys.stderr)
        print("=" * 80, file=sys.stderr)
        print("\nThe following environment variables are missing or invalid:\n", file=sys.stderr)

        for i, error in enumerate(errors, 1):
            print(f"{i}. {error}", file=sys.stderr)

        print("\n" + "=" * 80, file=sys.stderr)
        print("Please check your .env file or environment variables.", file=sys.stderr)
        print("=" * 80, file=sys.stderr)

        sys.exit(1)

#!/usr/bin/env python3
"""
Development server runner for the ArtCert API.
Checks the environment, then starts uvicorn with auto-reload.
"""

import os
import sys
import uvicorn
from pathlib import Path

# Add the parent directory to Python path
sys.path.append(str(Path(__file__).parent.parent))

# Load environment variables from .env file
from dotenv import load_dotenv
load_dotenv()

OPTIONAL_VARS = [
    "ARTCERT_RECORD_STORE",
    "ARTCERT_DB_DSN",
    "ARTCERT_NEAR_DUPLICATE_THRESHOLD",
    "ARTCERT_FINGERPRINT_ALGORITHM",
    "ARTCERT_FINGERPRINT_HASH_SIZE",
    "ARTCERT_INDEX_KIND",
    "ARTCERT_USE_GCS",
    "ARTCERT_GCS_BUCKET_NAME",
    "ARTCERT_LOCAL_STORAGE_DIR",
    "ARTCERT_FORWARDED_ALLOW_IPS",
]


def check_environment() -> bool:
    """Report configuration; Postgres needs a DSN."""
    store = os.getenv("ARTCERT_RECORD_STORE", "postgres")
    if store == "postgres" and not os.getenv("ARTCERT_DB_DSN"):
        print("Missing ARTCERT_DB_DSN (or set ARTCERT_RECORD_STORE=memory for a throwaway store)")
        return False

    print("Configuration:")
    for var in OPTIONAL_VARS:
        value = os.getenv(var, "Not set")
        if var == "ARTCERT_DB_DSN" and value != "Not set":
            # Don't show full database URL
            value = f"{value[:20]}..." if len(value) > 20 else value
        print(f"  {var}: {value}")
    return True


def main():
    """Main entry point for development server."""
    print("ArtCert - Development Server")
    print("=" * 50)

    if not check_environment():
        sys.exit(1)

    if os.getenv("ARTCERT_RECORD_STORE", "postgres") == "postgres":
        from artcert import config
        from artcert.core.database import PostgresRecordStore
        if not PostgresRecordStore(config.DB_DSN).check_connection():
            print("Database connection failed; check ARTCERT_DB_DSN")
            sys.exit(1)
        print("Database connection successful")

    host = os.getenv("ARTCERT_API_HOST", "0.0.0.0")
    port = int(os.getenv("ARTCERT_API_PORT", 8000))
    debug = os.getenv("ARTCERT_DEBUG", "true").lower() == "true"

    print(f"\nStarting development server on http://{host}:{port} (docs at /docs)")
    print("=" * 50)

    try:
        uvicorn.run(
            "artcert.main:app",
            host=host,
            port=port,
            reload=debug,
            proxy_headers=True,
            forwarded_allow_ips=os.getenv("ARTCERT_FORWARDED_ALLOW_IPS", "127.0.0.1"),
            log_level="debug" if debug else "info",
            access_log=True,
        )
    except KeyboardInterrupt:
        print("\nServer stopped by user")


if __name__ == "__main__":
    main()

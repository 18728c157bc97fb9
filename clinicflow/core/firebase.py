"""Firebase Admin SDK initialization."""

import json
import os
import re

import firebase_admin
from firebase_admin import credentials
from structlog import get_logger

logger = get_logger(__name__)

_firebase_app: firebase_admin.App | None = None

_TOPIC_UNSAFE = re.compile(r"[^a-zA-Z0-9\-_.~%]")


def initialize_firebase(
    firebase_credentials_path: str | None = None,
    firebase_config_json: str | None = None,
) -> firebase_admin.App:
    """
    Initialize Firebase Admin SDK once per process.

    Credentials are taken from the raw service-account JSON first, then the
    file path, then Application Default Credentials.

    Returns:
        The Firebase app
    """
    global _firebase_app

    if _firebase_app is not None:
        return _firebase_app

    cred = None
    if firebase_config_json:
        logger.info("firebase_init", source="json")
        cred = credentials.Certificate(json.loads(firebase_config_json))
    elif firebase_credentials_path and os.path.exists(firebase_credentials_path):
        logger.info("firebase_init", source="file", path=firebase_credentials_path)
        cred = credentials.Certificate(firebase_credentials_path)

    try:
        _firebase_app = firebase_admin.initialize_app(cred) if cred else firebase_admin.initialize_app()
    except Exception as e:
        logger.error("firebase_init_failed", error=str(e))
        raise

    return _firebase_app


def recipient_topic(recipient_type: str, recipient_id: str) -> str:
    """FCM topic a recipient's devices subscribe to."""
    return _TOPIC_UNSAFE.sub("_", f"{recipient_type}_{recipient_id}")

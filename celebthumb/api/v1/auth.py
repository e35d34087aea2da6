from fastapi import Depends, Header
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from typing import Optional
import firebase_admin
from firebase_admin import auth, credentials, exceptions as firebase_exceptions
from celebthumb.core.config import settings
from celebthumb.core.exceptions import AuthenticationError
from celebthumb.schemas.user import AuthenticatedUser
import json
import logging
import os

logger = logging.getLogger(__name__)


# Initialize Firebase Admin SDK
def init_firebase():
    """Initialize Firebase Admin SDK if not already initialized."""
    if firebase_admin._apps:
        return True

    # 1. Try loading from JSON string in environment variable (Best for Cloud)
    if settings.FIREBASE_CREDENTIALS_JSON:
        try:
            cred = credentials.Certificate(json.loads(settings.FIREBASE_CREDENTIALS_JSON))
            firebase_admin.initialize_app(cred)
            logger.info("Firebase Admin SDK initialized from FIREBASE_CREDENTIALS_JSON")
            return True
        except (ValueError, IOError) as e:
            logger.error(f"Failed to initialize Firebase from JSON env var: {e}")

    # 2. Fallback to file path
    possible_paths = [
        settings.FIREBASE_CREDENTIALS_PATH,
        os.path.join(os.getcwd(), settings.FIREBASE_CREDENTIALS_PATH),
    ]

    for path in possible_paths:
        if os.path.exists(path):
            try:
                cred = credentials.Certificate(path)
                firebase_admin.initialize_app(cred)
                logger.info(f"Firebase Admin SDK initialized with: {path}")
                return True
            except (ValueError, IOError) as e:
                logger.error(f"Failed to initialize Firebase with {path}: {e}")

    logger.warning(f"Firebase credentials not found. Tried env var and paths: {possible_paths}")
    return False

# Initialize Firebase on module load
firebase_initialized = init_firebase()

security = HTTPBearer(auto_error=False)

# For testing without Firebase - set TEST_MODE=true in .env
TEST_USER_ID = "test_user_123"


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    x_test_user: Optional[str] = Header(None),
    x_test_email: Optional[str] = Header(None)
) -> AuthenticatedUser:
    """
    Verify the Firebase ID token and return the caller's identity.

    The ledger keys balances by the token's uid; the email is forwarded to
    the payment processor when a paid plan is chosen.

    For testing: Set TEST_MODE=true in .env and use X-Test-User header.
    """
    # Test mode bypass for Postman testing
    if settings.TEST_MODE:
        uid = x_test_user or TEST_USER_ID
        return AuthenticatedUser(uid=uid, email=x_test_email or f"{uid}@example.com")

    if not firebase_initialized:
        logger.error("Firebase Admin SDK not initialized")
        raise AuthenticationError("Authentication service not configured")

    if not credentials:
        raise AuthenticationError("Authentication required")

    try:
        decoded_token = auth.verify_id_token(credentials.credentials)
    except auth.ExpiredIdTokenError:
        raise AuthenticationError("Token has expired")
    except auth.InvalidIdTokenError as e:
        logger.error(f"Invalid token: {e}")
        raise AuthenticationError("Invalid authentication token")
    except (ValueError, firebase_exceptions.FirebaseError) as e:
        logger.error(f"Authentication error: {e}")
        raise AuthenticationError("Could not validate credentials")

    logger.info(f"Authenticated user: {decoded_token['uid']}")
    return AuthenticatedUser(uid=decoded_token["uid"], email=decoded_token.get("email"))

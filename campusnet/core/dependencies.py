import os
import jwt
import logging
from dotenv import load_dotenv
from fastapi import Depends, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

load_dotenv()
logger = logging.getLogger(__name__)

security = HTTPBearer()
JWT_SIGN_KEY = os.getenv("SUPABASE_JWT_SECRET")


def verify_token(credentials: HTTPAuthorizationCredentials = Depends(security)):
    token = credentials.credentials

    try:
        payload = jwt.decode(
            token,
            JWT_SIGN_KEY,
            algorithms=["HS256"],
            issuer=f"{os.getenv('PUBLIC_SUPABASE_URL')}/auth/v1",
            options={"verify_aud": False},
            leeway=60,
        )
        return payload

    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")

    except jwt.InvalidTokenError as e:
        logger.warning(f"jwt_verification_failed error={e}")
        raise HTTPException(status_code=401, detail="Invalid token")


def get_current_user_id(payload: dict = Depends(verify_token)) -> str:
    """The acting user's opaque id, taken from the token subject."""
    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid authentication")
    return str(user_id)

"""
This module is used to verify the JWT token we use for authentication
"""

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from backend.auth.auth_handler import decode_jwt, get_user_id_from_token


class JWTBearer(HTTPBearer):
    """
    This is a subclass of the FastAPI HTTPBearer class that is used to manage
    authentication via JWT
    """

    def __init__(self, auto_error: bool = True):
        super().__init__(auto_error=auto_error)

    async def __call__(self, request: Request):
        """
        This function verifies the JWT token as well as the overall
        credential scheme used.
        """
        credentials: HTTPAuthorizationCredentials = await super().__call__(request)
        if credentials:
            if not credentials.scheme == "Bearer":
                raise HTTPException(
                    status_code=403, detail="Invalid authentication scheme."
                )
            if not self.verify_jwt(credentials.credentials):
                raise HTTPException(status_code=401, detail="Expired token.")

            return credentials.credentials

        raise HTTPException(status_code=403, detail="Invalid authorization code.")

    def verify_jwt(self, jwtoken: str) -> bool:
        """
        This function decodes and verifies the JWT token
        """
        return bool(decode_jwt(jwtoken))


async def get_current_user(token: str = Depends(JWTBearer())) -> int:
    """
    Resolve the authenticated user id from the bearer token.
    """
    user_id = get_user_id_from_token(token)
    if user_id is None:
        raise HTTPException(status_code=401, detail="Invalid token payload.")
    return user_id

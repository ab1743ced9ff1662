
# deps/auth.py
from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from security import decode_token

bearer = HTTPBearer(auto_error=False)


class CurrentUser:
    def __init__(self, user_id: str):
        self.user_id = user_id

    def __repr__(self) -> str:
        return f"CurrentUser(user_id={self.user_id!r})"


def get_current_user(
    creds: HTTPAuthorizationCredentials = Depends(bearer),
) -> CurrentUser:
    if not creds:
        raise HTTPException(status_code=401, detail="UNAUTHORIZED")

    if (creds.scheme or "").lower() != "bearer":
        raise HTTPException(status_code=401, detail="UNAUTHORIZED")

    payload = decode_token(creds.credentials)
    sub = str(payload.get("sub") or "").strip()
    if not sub:
        raise HTTPException(status_code=401, detail="UNAUTHORIZED")

    return CurrentUser(user_id=sub)

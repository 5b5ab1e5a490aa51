from datetime import datetime, timezone
from typing import Literal, Optional, Union
from pydantic import BaseModel, Field
from typing_extensions import Annotated


class TokenSet(BaseModel):
    """Tokens returned by an OAuth authorization or refresh"""
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None


class OAuthCredentials(BaseModel):
    kind: Literal['oauth'] = 'oauth'
    integration_id: str
    user_id: str
    provider: str
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        now = now or datetime.now(timezone.utc)
        expires_at = self.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return expires_at <= now


class BasicAuthCredentials(BaseModel):
    """Static CalDAV credentials; there is nothing to refresh"""
    kind: Literal['basic'] = 'basic'
    integration_id: str
    user_id: str
    provider: str
    server_url: str
    username: str
    password: str

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return False


Credentials = Annotated[Union[OAuthCredentials, BasicAuthCredentials], Field(discriminator='kind')]

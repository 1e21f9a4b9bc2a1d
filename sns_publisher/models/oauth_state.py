# sns_publisher/models/oauth_state.py
import uuid
from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel

from sns_publisher.clock import utcnow


class OAuthState(SQLModel, table=True):
    __tablename__ = "sns_oauth_states"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    owner_id: uuid.UUID = Field(index=True)
    platform: str
    state_nonce: str = Field(unique=True, index=True)
    pkce_verifier: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime

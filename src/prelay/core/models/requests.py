from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class CreatePredictionRequest(BaseModel):
    """Body of `POST /predictions`.

    `webhook` is kept as a raw mapping so every validation problem can be
    reported at once instead of failing on the first pydantic error.
    """

    version: str
    input: Dict[str, Any] = Field(default_factory=dict)
    webhook: Optional[Dict[str, Any]] = None
    webhook_events_filter: Optional[List[str]] = None


class SubscriptionRequest(BaseModel):
    uri: str

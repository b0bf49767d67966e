from pydantic import BaseModel, Field
from typing import Optional


class IdentityProfile(BaseModel):
    """Identity assertion handed over by the external login provider.

    Already verified upstream; the core does not check provider signatures.
    """
    subject_id: str = Field(min_length=1)
    email: str = Field(min_length=3)
    display_name: str = ""
    picture: Optional[str] = None
    verified_email: Optional[bool] = None

from pydantic import BaseModel
from typing import Any, Dict, List, Optional, Union


class RegistrationSubmit(BaseModel):
    username: Optional[str] = None
    # PublicKeyCredential JSON, as text or already decoded
    response: Union[str, Dict[str, Any]]
    # validated by the ceremony so bad values get the API's own error body
    transports: Optional[List[str]] = None


class AuthenticationSubmit(BaseModel):
    username: Optional[str] = None
    response: Union[str, Dict[str, Any]]

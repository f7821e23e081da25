from typing import Any, Optional

from pydantic import BaseModel, ConfigDict


class CamelModel(BaseModel):
    """Request model accepting camelCase keys as well as field names"""

    model_config = ConfigDict(populate_by_name=True)


class ApiResponse(BaseModel):
    """Envelope returned by every endpoint"""

    success: bool = True
    data: Optional[Any] = None
    message: Optional[str] = None

from typing import Generic, Optional, TypeVar

from pydantic import BaseModel

# Define the type variable used for the generic ApiResponse
T = TypeVar("T")


class ApiResponse(BaseModel, Generic[T]):
    status: str  # "success" or "error"
    message: Optional[str] = None
    data: Optional[T] = None

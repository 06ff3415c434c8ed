from typing import Generic, TypeVar

from pydantic import BaseModel, Field

ItemT = TypeVar("ItemT")


class PaginationParams(BaseModel):
    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=25, ge=1, le=100)

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size


class PaginatedResponse(BaseModel, Generic[ItemT]):
    items: list[ItemT]
    total: int
    page: int
    page_size: int
    total_pages: int

    @classmethod
    def create(cls, items: list, total: int, params: PaginationParams) -> "PaginatedResponse":
        total_pages = (total + params.page_size - 1) // params.page_size if total > 0 else 0
        return cls(items=items, total=total, page=params.page, page_size=params.page_size, total_pages=total_pages)

# menugen/models/menu.py
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, field_validator, model_validator


class MenuStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"


class DishStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"


TERMINAL_MENU_STATUSES = {MenuStatus.COMPLETE.value, MenuStatus.FAILED.value}
TERMINAL_DISH_STATUSES = {DishStatus.COMPLETE.value, DishStatus.FAILED.value}


# --- Extraction draft (shape enforced on the vision model output) ---

class DraftDish(BaseModel):
    name: str
    price: Optional[str] = None

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, v: str) -> str:
        v = " ".join(v.split())
        if not v:
            raise ValueError("dish name must not be empty")
        return v

    @field_validator("price", mode="before")
    @classmethod
    def price_as_text(cls, v):
        if v is None:
            return None
        text = str(v).strip()
        return text or None


class DraftSection(BaseModel):
    name: str = ""
    dishes: List[DraftDish] = []

    @field_validator("name", mode="before")
    @classmethod
    def clean_name(cls, v):
        return " ".join(str(v or "").split())


class DraftMenu(BaseModel):
    sections: List[DraftSection]

    @model_validator(mode="after")
    def has_dishes(self):
        if not self.sections:
            raise ValueError("no sections were extracted")
        if self.dish_count == 0:
            raise ValueError("no dishes were extracted")
        return self

    @property
    def dish_count(self) -> int:
        return sum(len(section.dishes) for section in self.sections)

    @property
    def price_strings(self) -> List[str]:
        return [dish.price for section in self.sections for dish in section.dishes if dish.price]


# --- API responses ---

class MenuUploadResponse(BaseModel):
    menu_id: str
    status: str


class MenuProgress(BaseModel):
    processed_dishes: int
    total_dishes: int


class DishResponse(BaseModel):
    id: str
    section_id: Optional[str] = None
    name: str
    price_cents: Optional[int] = None
    currency: str
    raw_price_string: Optional[str] = None
    description: Optional[str] = None
    image_url: Optional[str] = None
    status: str
    failure_reason: Optional[str] = None
    position: int


class MenuSectionResponse(BaseModel):
    id: str
    name: str
    position: int
    dishes: List[DishResponse] = []


class MenuStructureResponse(BaseModel):
    id: str
    status: str
    currency: str
    sections: List[MenuSectionResponse]
    ungrouped_dishes: List[DishResponse] = []


class ErrorResponse(BaseModel):
    code: str
    message: str


class MenuStatusResponse(BaseModel):
    menu_id: str
    status: str
    progress: Optional[MenuProgress] = None
    menu: Optional[MenuStructureResponse] = None
    error: Optional[ErrorResponse] = None

"""
Database Schemas

Pydantic models for the MongoDB collections and the request payloads that
feed them. Model name is converted to lowercase for the collection name:
- Tour -> "tour" collection
- User -> "user" collection
- Review -> "review" collection
"""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Union, get_args, get_origin

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator

Difficulty = Literal["easy", "medium", "difficult"]
Role = Literal["user", "guide", "lead-guide", "admin"]

PASSWORD_MIN_LENGTH = 8
# bcrypt only looks at the first 72 bytes
PASSWORD_MAX_LENGTH = 72


class GeoPoint(BaseModel):
    type: Literal["Point"] = "Point"
    coordinates: List[float] = Field(..., min_length=2, max_length=2, description="[longitude, latitude]")
    address: Optional[str] = None
    description: Optional[str] = None


class Location(GeoPoint):
    day: Optional[int] = Field(None, ge=0)


class Tour(BaseModel):
    """
    Tours collection schema
    Collection name: "tour"
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(..., min_length=10, max_length=40, description="Unique tour name")
    slug: Optional[str] = None
    duration: int = Field(..., gt=0, description="Length in days")
    max_group_size: int = Field(..., gt=0)
    difficulty: Difficulty
    ratings_average: float = Field(4.5, ge=1, le=5)
    ratings_quantity: int = Field(0, ge=0)
    price: float = Field(..., ge=0)
    price_discount: Optional[float] = Field(None, ge=0)
    summary: str = Field(..., min_length=1)
    description: Optional[str] = None
    image_cover: str = Field(..., description="Cover image reference")
    images: List[str] = Field(default_factory=list)
    start_dates: List[datetime] = Field(default_factory=list)
    start_location: Optional[GeoPoint] = None
    locations: List[Location] = Field(default_factory=list)
    guides: List[str] = Field(default_factory=list, description="User ids")
    secret_tour: bool = False

    @model_validator(mode="after")
    def discount_below_price(self):
        if self.price_discount is not None and self.price_discount >= self.price:
            raise ValueError(f"Discount price ({self.price_discount}) should be below regular price")
        return self


# optional on Tour without a default; everything else must stay non-null once set
NULLABLE_TOUR_FIELDS = frozenset(
    name for name, field in Tour.model_fields.items() if not field.is_required() and field.default is None
)


class TourUpdate(BaseModel):
    """Partial tour update; only the fields sent are written."""
    model_config = ConfigDict(str_strip_whitespace=True)

    name: Optional[str] = Field(None, min_length=10, max_length=40)
    duration: Optional[int] = Field(None, gt=0)
    max_group_size: Optional[int] = Field(None, gt=0)
    difficulty: Optional[Difficulty] = None
    ratings_average: Optional[float] = Field(None, ge=1, le=5)
    ratings_quantity: Optional[int] = Field(None, ge=0)
    price: Optional[float] = Field(None, ge=0)
    price_discount: Optional[float] = Field(None, ge=0)
    summary: Optional[str] = None
    description: Optional[str] = None
    image_cover: Optional[str] = None
    images: Optional[List[str]] = None
    start_dates: Optional[List[datetime]] = None
    start_location: Optional[GeoPoint] = None
    locations: Optional[List[Location]] = None
    guides: Optional[List[str]] = None
    secret_tour: Optional[bool] = None

    @model_validator(mode="before")
    @classmethod
    def required_fields_not_null(cls, data: Any) -> Any:
        if isinstance(data, dict):
            nulls = sorted(
                k for k, v in data.items()
                if v is None and k in cls.model_fields and k not in NULLABLE_TOUR_FIELDS
            )
            if nulls:
                raise ValueError(f"{', '.join(nulls)} cannot be null")
        return data

    @model_validator(mode="after")
    def discount_below_price(self):
        if self.price is not None and self.price_discount is not None and self.price_discount >= self.price:
            raise ValueError(f"Discount price ({self.price_discount}) should be below regular price")
        return self


class User(BaseModel):
    """
    Users collection schema
    Collection name: "user"
    """
    name: str = Field(..., min_length=1, description="Full name")
    email: EmailStr = Field(..., description="Unique, stored lowercase")
    photo: Optional[str] = None
    role: Role = "user"
    password: str = Field(..., description="bcrypt hash")
    password_changed_at: Optional[datetime] = None
    password_reset_token: Optional[str] = Field(None, description="sha256 of the emailed reset token")
    password_reset_expires: Optional[datetime] = None
    active: bool = True

    @field_validator("email")
    @classmethod
    def lowercase_email(cls, v: str) -> str:
        return v.strip().lower()


class Review(BaseModel):
    """
    Reviews collection schema
    Collection name: "review"
    """
    model_config = ConfigDict(extra="allow")

    review: str = Field(..., min_length=1)
    rating: Optional[float] = Field(None, ge=1, le=5)
    tour: Optional[str] = Field(None, description="Tour id")
    user: Optional[str] = Field(None, description="Author user id")


# ----------------------
# Request payloads
# ----------------------

class _NewPassword(BaseModel):
    password: str = Field(..., min_length=PASSWORD_MIN_LENGTH, max_length=PASSWORD_MAX_LENGTH)
    password_confirm: str

    @model_validator(mode="after")
    def passwords_match(self):
        if self.password != self.password_confirm:
            raise ValueError("Passwords do not match!")
        return self


class SignupRequest(_NewPassword):
    name: str = Field(..., min_length=1)
    email: EmailStr


class LoginRequest(BaseModel):
    email: Optional[str] = None
    password: Optional[str] = None


class ForgotPasswordRequest(BaseModel):
    email: str


class ResetPasswordRequest(_NewPassword):
    pass


class UpdatePasswordRequest(_NewPassword):
    password_current: str


class UpdateMeRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    email: Optional[EmailStr] = None
    photo: Optional[str] = None
    password: Optional[str] = None
    password_confirm: Optional[str] = None


# ----------------------
# Query helpers
# ----------------------

SCALAR_TYPES = (int, float, bool, datetime)


def field_types(model, **extra: type) -> Dict[str, type]:
    """Map each scalar field of `model` to its python type, for casting query-string values."""
    types: Dict[str, type] = {}
    for name, field in model.model_fields.items():
        annotation: Any = field.annotation
        if get_origin(annotation) is Union:
            args = [a for a in get_args(annotation) if a is not type(None)]
            if len(args) == 1:
                annotation = args[0]
        if get_origin(annotation) in (list, List):
            annotation = get_args(annotation)[0]
        if annotation in SCALAR_TYPES:
            types[name] = annotation
    types.update(extra)
    return types


TOUR_FIELD_TYPES = field_types(Tour, created_at=datetime)
USER_FIELD_TYPES = field_types(User, created_at=datetime)
REVIEW_FIELD_TYPES = field_types(Review, created_at=datetime)

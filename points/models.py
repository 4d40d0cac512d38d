import re
from datetime import datetime, timezone
from typing import Any, ClassVar, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictInt, StrictStr, field_validator
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError

# largest value a signed 64-bit INTEGER column holds
MAX_POINTS = 2**63 - 1

ISO_DATETIME = re.compile(
    r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}(:\d{2}(\.\d+)?)?(Z|[+-]\d{2}:?\d{2})?$"
)


class Grant(BaseModel):
    id: int
    payer: str
    points: int
    timestamp: datetime

    model_config = ConfigDict(from_attributes=True)


class _PayloadModel(BaseModel):
    """Request bodies validated into a tagged ValidationError naming the first bad field."""

    # field -> (message when missing, message when malformed)
    field_messages: ClassVar[dict[str, tuple[str, str]]] = {}

    @classmethod
    def from_payload(cls, payload: Optional[dict[str, Any]]):
        # null counts as missing
        data = {key: value for key, value in (payload or {}).items() if value is not None}
        try:
            return cls.model_validate(data)
        except PydanticValidationError as e:
            error = e.errors()[0]
            field = str(error["loc"][0]) if error["loc"] else ""
            missing, invalid = cls.field_messages.get(field, (f"You must specify {field}!", f"{field} is invalid!"))
            raise ValidationError(field, missing if error["type"] == "missing" else invalid) from None


class AddPointsRequest(_PayloadModel):
    payer: StrictStr = Field(..., min_length=1)
    points: StrictInt = Field(..., gt=0, le=MAX_POINTS)
    timestamp: datetime

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "payer": "DANNON",
                "points": 5000,
                "timestamp": "2020-11-02T14:00:00Z",
            }
        },
    )

    field_messages: ClassVar[dict[str, tuple[str, str]]] = {
        "payer": ("You must specify a payer!", "You must specify a payer!"),
        "points": ("You must specify points to add!", "points must be a positive integer!"),
        "timestamp": ("You must specify a timestamp!", "timestamp must be an ISO-8601 date-time!"),
    }

    @field_validator("timestamp", mode="before")
    @classmethod
    def _require_iso_string(cls, value: Any) -> Any:
        if isinstance(value, datetime):
            return value
        if isinstance(value, str) and ISO_DATETIME.match(value.strip()):
            return value.strip()
        raise ValueError("timestamp must be an ISO-8601 string")

    @field_validator("timestamp")
    @classmethod
    def _as_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class SpendRequest(_PayloadModel):
    points: StrictInt = Field(..., gt=0, le=MAX_POINTS)

    model_config = ConfigDict(json_schema_extra={"example": {"points": 5000}})

    field_messages: ClassVar[dict[str, tuple[str, str]]] = {
        "points": ("You must specify points to spend!", "points must be a positive integer!"),
    }


class AddPointsResponse(BaseModel):
    msg: str
    id: int


class PayerPoints(BaseModel):
    payer: str
    points: int


class GrantDeduction(BaseModel):
    grant_id: int
    payer: str
    deducted: int
    remaining_points: int


class SpendPlan(BaseModel):
    requested_points: int
    deductions: list[GrantDeduction] = Field(default_factory=list)
    # payer -> negative points removed, in first-touched order
    summary: dict[str, int] = Field(default_factory=dict)

    def payer_points(self) -> list[PayerPoints]:
        return [PayerPoints(payer=payer, points=points) for payer, points in self.summary.items()]

    @property
    def total_deducted(self) -> int:
        return sum(d.deducted for d in self.deductions)

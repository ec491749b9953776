from pydantic import BaseModel, ConfigDict, Field
from enum import Enum
from datetime import datetime
import time

from exceptions import (
    AboveMaxChargeError,
    BelowMinChargeError,
    ChargeStepError,
    InsufficientPointError,
    NegativeUseError,
    TotalExceededError,
)


MIN_CHARGE_AMOUNT = 10_000
CHARGE_STEP = 10_000
MAX_CHARGE_AMOUNT = 100_000
MAX_TOTAL_POINT = 10_000_000


def current_millis() -> int:
    return int(time.time() * 1000)


class TransactionType(str, Enum):
    CHARGE = "CHARGE"
    USE = "USE"
    FAIL = "FAIL"


class UserPoint(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int = Field(..., ge=0, description="User identifier")
    point: int = Field(..., description="Current point balance")
    updateMillis: int = Field(..., description="Last update time in epoch millis")

    @classmethod
    def empty(cls, user_id: int) -> "UserPoint":
        return cls(id=user_id, point=0, updateMillis=current_millis())

    def charged(self, amount: int) -> int:
        """Validate a charge against this balance and return the next balance.

        Checks run in a fixed order so callers always see the same error for
        the same input: minimum, step, maximum, then the total cap.
        """
        if amount < MIN_CHARGE_AMOUNT:
            raise BelowMinChargeError(f"Minimum charge is {MIN_CHARGE_AMOUNT} points")
        if amount % CHARGE_STEP != 0:
            raise ChargeStepError(f"Charges must be made in units of {CHARGE_STEP} points")
        if amount > MAX_CHARGE_AMOUNT:
            raise AboveMaxChargeError(f"Maximum charge is {MAX_CHARGE_AMOUNT} points")

        next_point = self.point + amount
        if next_point > MAX_TOTAL_POINT:
            raise TotalExceededError(f"Balance cannot exceed {MAX_TOTAL_POINT} points")
        return next_point

    def used(self, amount: int) -> int:
        """Validate a use against this balance and return the next balance."""
        if amount < 0:
            raise NegativeUseError("Use amount must be 0 or greater")

        next_point = self.point - amount
        if next_point < 0:
            raise InsufficientPointError("Insufficient point balance")
        return next_point


class PointHistory(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int = Field(..., description="Process-wide history entry id")
    userId: int = Field(..., description="User the entry belongs to")
    amount: int = Field(..., description="Requested amount, as received")
    type: TransactionType = Field(..., description="Transaction outcome")
    updateMillis: int = Field(..., description="Entry time in epoch millis")


class ErrorResponse(BaseModel):
    code: str = Field(..., description="HTTP status code as a string")
    message: str = Field(..., description="Error description")


class HealthResponse(BaseModel):
    status: str = Field(..., description="Service health status")
    timestamp: datetime = Field(default_factory=datetime.now)
    users_count: int = Field(..., description="Number of users with a stored balance")
    histories_count: int = Field(..., description="Total history entries recorded")

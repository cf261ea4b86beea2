"""Receipt scanning schemas."""

from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ReceiptItem(BaseModel):
    """A line item read off a receipt."""

    name: str = Field(..., min_length=1, max_length=255)
    quantity: float = Field(default=1, ge=0)
    price: Decimal | None = Field(default=None, ge=0)

    @field_validator("quantity", mode="before")
    @classmethod
    def default_missing_quantity(cls, v):
        """The model sends null when it cannot read the quantity."""
        return 1 if v is None else v


class ReceiptData(BaseModel):
    """Structured receipt as returned by the vision model.

    Field names follow the JSON the model is asked to produce;
    ``paymentMethod`` is accepted under its camelCase name.
    """

    model_config = ConfigDict(populate_by_name=True)

    merchant: str | None = Field(default=None, max_length=255)
    date: str | None = Field(default=None, description="YYYY-MM-DD")
    time: str | None = Field(default=None, description="HH:MM")
    total: Decimal = Field(..., ge=0)
    currency: str | None = Field(default=None, max_length=8)
    items: list[ReceiptItem] = Field(default_factory=list)
    tax: Decimal | None = Field(default=None, ge=0)
    category: str | None = Field(default=None, max_length=100)
    payment_method: str | None = Field(
        default=None, alias="paymentMethod", max_length=100
    )
    location: str | None = Field(default=None, max_length=255)

    @field_validator("items", mode="before")
    @classmethod
    def default_missing_items(cls, v):
        return [] if v is None else v

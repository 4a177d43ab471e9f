import json
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_serializer, field_validator

from errors import ExtractionError


class ProductRecord(BaseModel):
    """One open-box catalog entry as read from the listing page.

    - `product_url` is the identity key; always absolute once extracted
    - `price` is the lowest amount displayed on the cell
    - Field aliases follow the wire format: `{name, url, image, price, grade}`
    """
    model_config = ConfigDict(populate_by_name=True)

    name: Optional[str] = None
    product_url: str = Field(default="", alias="url")
    image_url: Optional[str] = Field(default=None, alias="image")
    price: Optional[Decimal] = Field(default=None, ge=0)
    grade: Optional[str] = None

    @field_validator("product_url", mode="before")
    @classmethod
    def _none_url_to_empty(cls, value: Any) -> Any:
        # Records with a null url still parse; persistence skips them
        return "" if value is None else value

    @field_serializer("price")
    def _price_as_number(self, value: Optional[Decimal]) -> Optional[float]:
        return float(value) if value is not None else None

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class StoredProduct(ProductRecord):
    """A persisted `ProductRecord` with its surrogate key and timestamps."""
    id: int
    created_at: str
    updated_at: str

    @property
    def is_new(self) -> bool:
        return self.created_at == self.updated_at


def dump_wire_records(records: List[ProductRecord]) -> str:
    return json.dumps([r.to_wire() for r in records], ensure_ascii=False, indent=2)


def parse_wire_records(text: str) -> List[ProductRecord]:
    """Parse a JSON array of wire objects into records.

    Any structural problem is fatal for the run and raises `ExtractionError`.
    """
    try:
        data = json.loads(text)
    except (TypeError, ValueError) as e:
        raise ExtractionError(f"failed to parse products JSON: {e}") from e
    if not isinstance(data, list):
        raise ExtractionError(f"expected a JSON array of products, got {type(data).__name__}")
    records: List[ProductRecord] = []
    for i, item in enumerate(data):
        if not isinstance(item, dict):
            raise ExtractionError(f"product #{i} is not an object")
        try:
            records.append(ProductRecord.model_validate(item))
        except ValidationError as e:
            raise ExtractionError(f"product #{i} is invalid: {e}") from e
    return records

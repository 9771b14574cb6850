from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator

DocumentType = Literal["01", "06"]  # 01 = national id, 06 = tax id (company)

_CUSTOMER_KEYS = ("name", "document_type", "document_number", "email", "phone")
_ADDRESS_KEYS = ("address", "district", "city", "reference", "phone")


def _clean(value: Any) -> Any:
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return value


def _display_name(source: dict[str, Any]) -> str | None:
    business_name = _clean(source.get("business_name"))
    if business_name:
        return business_name
    parts = [_clean(source.get("first_name")), _clean(source.get("last_name"))]
    full_name = " ".join(part for part in parts if part)
    return full_name or _clean(source.get("name")) or _clean(source.get("customer_name"))


def normalize_checkout_payload(data: Any) -> Any:
    """
    Map the accepted checkout request shapes onto one canonical shape.

    Canonical: {"customer": {...}, "address": {...} | None, "currency", "note"}.
    Also accepted:
      nested: {"entity": {...}, "contact": {...}, "address": {...}}
      flat:   {"customer_name" | "first_name"/"last_name" | "business_name",
               "document_type", "document_number", "email", "phone",
               "address": "<street>", "district", "city", "reference"}
    Non-dict input is returned untouched so field validation reports it.
    """
    if not isinstance(data, dict):
        return data
    if isinstance(data.get("customer"), dict):
        return data

    normalized: dict[str, Any] = {
        "currency": _clean(data.get("currency")),
        "note": _clean(data.get("note")) or _clean(data.get("observations")),
    }

    if isinstance(data.get("entity"), dict):
        entity = data["entity"]
        contact = data.get("contact") if isinstance(data.get("contact"), dict) else {}
        normalized["customer"] = {
            "name": _display_name(entity) or _clean(contact.get("name")),
            "document_type": _clean(entity.get("document_type")),
            "document_number": _clean(entity.get("document_number")),
            "email": _clean(contact.get("email")) or _clean(entity.get("email")),
            "phone": _clean(contact.get("phone")) or _clean(entity.get("phone")),
        }
        address = data.get("address")
        if isinstance(address, dict):
            normalized["address"] = {key: _clean(address.get(key)) for key in _ADDRESS_KEYS}
        else:
            normalized["address"] = None
        return normalized

    normalized["customer"] = {
        "name": _display_name(data),
        "document_type": _clean(data.get("document_type")),
        "document_number": _clean(data.get("document_number")),
        "email": _clean(data.get("email")),
        "phone": _clean(data.get("phone")),
    }
    street = data.get("address")
    if isinstance(street, dict):
        normalized["address"] = {key: _clean(street.get(key)) for key in _ADDRESS_KEYS}
    elif _clean(street):
        normalized["address"] = {
            "address": _clean(street),
            "district": _clean(data.get("district")),
            "city": _clean(data.get("city")),
            "reference": _clean(data.get("reference")),
            "phone": _clean(data.get("phone")),
        }
    else:
        normalized["address"] = None
    return normalized


class CheckoutCustomerIn(BaseModel):
    name: str = Field(min_length=1, max_length=160)
    document_type: Optional[DocumentType] = None
    document_number: Optional[str] = Field(default=None, max_length=20)
    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(default=None, max_length=40)

    @field_validator("document_number")
    @classmethod
    def validate_document_number(cls, value: str | None) -> str | None:
        if value is not None and not value.isdigit():
            raise ValueError("document_number must contain digits only")
        return value

    @model_validator(mode="after")
    def validate_document_pair(self):
        if (self.document_type is None) != (self.document_number is None):
            raise ValueError("document_type and document_number must be sent together")
        if self.document_type == "01" and self.document_number and len(self.document_number) != 8:
            raise ValueError("A national id document number has 8 digits")
        if self.document_type == "06" and self.document_number and len(self.document_number) != 11:
            raise ValueError("A tax id document number has 11 digits")
        return self


class CheckoutAddressIn(BaseModel):
    address: str = Field(min_length=1, max_length=255)
    district: Optional[str] = Field(default=None, max_length=120)
    city: Optional[str] = Field(default=None, max_length=120)
    reference: Optional[str] = Field(default=None, max_length=255)
    phone: Optional[str] = Field(default=None, max_length=40)


class CheckoutIn(BaseModel):
    customer: CheckoutCustomerIn
    address: Optional[CheckoutAddressIn] = None
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    note: Optional[str] = Field(default=None, max_length=255)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "entity": {
                    "document_type": "01",
                    "document_number": "45678912",
                    "first_name": "Ana",
                    "last_name": "Quispe",
                },
                "contact": {"email": "ana@example.com", "phone": "+51 999 888 777"},
                "address": {"address": "Av. Arequipa 1234", "district": "Lince", "city": "Lima"},
                "currency": "PEN",
            }
        }
    )

    @model_validator(mode="before")
    @classmethod
    def normalize_shape(cls, data: Any) -> Any:
        return normalize_checkout_payload(data)

    @field_validator("currency")
    @classmethod
    def normalize_currency(cls, value: str | None) -> str | None:
        return value.upper() if value else value

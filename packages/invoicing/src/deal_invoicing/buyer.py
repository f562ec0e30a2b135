"""Buyer snapshot built from the CRM person and organization of a deal."""

import re
from typing import Any

import structlog

from deal_invoicing.models import BuyerSnapshot

logger = structlog.get_logger(__name__)

DEFAULT_COUNTRY = "PL"
DEFAULT_PL_ZIP = "80-000"
DEFAULT_PL_CITY = "Gdańsk"
UNKNOWN_ZIP = "00-000"

COUNTRY_CODES = {
    "polska": "PL",
    "niemcy": "DE",
    "francja": "FR",
    "wielka brytania": "GB",
    "stany zjednoczone": "US",
    "czechy": "CZ",
    "litwa": "LT",
    "łotwa": "LV",
    "poland": "PL",
    "germany": "DE",
    "deutschland": "DE",
    "france": "FR",
    "united kingdom": "GB",
    "uk": "GB",
    "united states": "US",
    "usa": "US",
    "czech republic": "CZ",
    "lithuania": "LT",
    "latvia": "LV",
    "estonia": "EE",
    "portugal": "PT",
    "spain": "ES",
    "italy": "IT",
    "netherlands": "NL",
    "belgium": "BE",
    "austria": "AT",
    "switzerland": "CH",
    "sweden": "SE",
    "norway": "NO",
    "denmark": "DK",
    "finland": "FI",
    "ukraine": "UA",
    "ukraina": "UA",
    "україна": "UA",
}

_PL_ZIP = re.compile(r"^\d{2}-\d{3}$")


def normalize_country_code(country: str | None) -> str:
    """ISO 3166 alpha-2 code for a country name or code; Poland when unknown."""
    if not country:
        return DEFAULT_COUNTRY
    text = country.strip()
    if len(text) == 2:
        return text.upper()
    return COUNTRY_CODES.get(text.lower(), DEFAULT_COUNTRY)


def normalize_zip(zip_code: str | None) -> str | None:
    """Coerce a postal code into the Polish ``XX-XXX`` format."""
    if not zip_code:
        return None
    text = zip_code.strip()
    if _PL_ZIP.match(text):
        return text
    digits = re.sub(r"\D", "", text)
    if len(digits) == 5:
        return f"{digits[:2]}-{digits[2:]}"
    return UNKNOWN_ZIP


def _first_value(entries: Any) -> str | None:
    # CRM contact fields are lists like [{"value": "a@b.c", "primary": true}]
    if isinstance(entries, list):
        for entry in entries:
            value = entry.get("value") if isinstance(entry, dict) else entry
            if value:
                return str(value)
        return None
    if isinstance(entries, str) and entries:
        return entries
    return None


def customer_email(person: dict[str, Any] | None, organization: dict[str, Any] | None) -> str | None:
    """Person email first, organization email second."""
    for record in (person, organization):
        if not record:
            continue
        email = _first_value(record.get("email")) or record.get("primary_email")
        if email:
            return str(email).strip()
    return None


def merge_buyer(
    person: dict[str, Any] | None, organization: dict[str, Any] | None
) -> BuyerSnapshot | None:
    """Best-effort merge of the deal's organization and person.

    The organization provides the name, address and tax id when present; the
    person fills in contact details and the address for private buyers.
    """
    if not person and not organization:
        return None

    email = customer_email(person, organization)
    phone = _first_value((person or {}).get("phone")) or _first_value(
        (organization or {}).get("phone")
    )

    if organization:
        country = normalize_country_code(organization.get("country"))
        return BuyerSnapshot(
            name=str(organization.get("name") or (person or {}).get("name") or ""),
            email=email,
            phone=phone,
            address=organization.get("address") or "",
            zip=normalize_zip(organization.get("zip"))
            or (DEFAULT_PL_ZIP if country == DEFAULT_COUNTRY else UNKNOWN_ZIP),
            city=organization.get("city") or (DEFAULT_PL_CITY if country == DEFAULT_COUNTRY else ""),
            country=country,
            tax_id=organization.get("business_id") or None,
        )

    person = person or {}
    country = normalize_country_code(person.get("postal_address_country"))
    buyer = BuyerSnapshot(
        name=str(person.get("name") or ""),
        email=email,
        phone=phone,
        address=person.get("postal_address") or person.get("postal_address_route") or "",
        zip=normalize_zip(person.get("postal_address_postal_code")) or UNKNOWN_ZIP,
        city=person.get("postal_address_locality")
        or (DEFAULT_PL_CITY if country == DEFAULT_COUNTRY else ""),
        country=country,
    )
    logger.debug("buyer_from_person", person_id=person.get("id"), country=country, zip=buyer.zip)
    return buyer

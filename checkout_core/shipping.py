"""
Shipping-region compatibility between cart items and the destination country.
"""
from typing import List, NamedTuple, Optional

from checkout_core.models import CartItem, Country


class IncompatibleItem(NamedTuple):
    item: CartItem
    available_regions: List[str]
    requested_region: str


def _find_country(countries: List[Country], code: str) -> Optional[Country]:
    return next((c for c in countries if c.code == code), None)


def region_allows(available_regions: List[str], country_code: str, country_region: Optional[str]) -> bool:
    if country_code in available_regions or "worldwide" in available_regions:
        return True
    if "EU" in available_regions and country_region == "europe":
        return True
    if "UK" in available_regions and country_code == "GB":
        return True
    return False


def check_shipping_compatibility(
    items: List[CartItem],
    country_code: str,
    countries: List[Country]
) -> List[IncompatibleItem]:
    """
    Find fulfillment items that cannot ship to the country.

    Items without a fulfillment reference, or without region data, are
    assumed to ship anywhere. An unknown country yields no findings.
    """
    country = _find_country(countries, country_code) if country_code else None
    if country is None:
        return []

    incompatible: List[IncompatibleItem] = []
    for item in items:
        if item.source != "printful" and not item.fulfillment_variant_id:
            continue
        if not item.availability_regions:
            continue
        if not region_allows(item.availability_regions, country_code, country.region):
            incompatible.append(IncompatibleItem(item, item.availability_regions, country_code))
    return incompatible


def get_region_name(region_code: str, countries: List[Country]) -> str:
    country = _find_country(countries, region_code)
    if country:
        return country.name
    if region_code == "UK":
        uk = _find_country(countries, "GB")
        if uk:
            return uk.name
    if region_code == "EU":
        return "Europe"
    if region_code == "worldwide":
        return "Worldwide"
    return region_code


def format_incompatibility_message(incompatible: List[IncompatibleItem], countries: List[Country]) -> str:
    if not incompatible:
        return ""
    if len(incompatible) == 1:
        entry = incompatible[0]
        regions = ", ".join(get_region_name(r, countries) for r in entry.available_regions)
        return f'"{entry.item.product_name}" can only ship to: {regions}'
    return (
        f"{len(incompatible)} items in your cart cannot ship to the selected region. "
        "Please remove them to continue."
    )

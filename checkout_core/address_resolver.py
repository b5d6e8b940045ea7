"""
Country/state reference data and postal-code resolution for the shipping form.
"""
import logging
from typing import List, Optional

from pydantic import BaseModel

from checkout_core.address_validation import normalize_state_name
from checkout_core.exceptions import OperationInProgressError
from checkout_core.models import Country, CustomerInfo, RegionState
from checkout_core.operations import Operation
from checkout_core.providers import ZIP_LOOKUP_COUNTRIES, RegionClient, ZipLookupClient

logger = logging.getLogger(__name__)

MIN_LOOKUP_LENGTH = 5


class ZipChangeOutcome(BaseModel):
    looked_up: bool = False
    resolved: bool = False
    message: Optional[str] = None


class AddressResolver:
    """Keeps the state list and customer address consistent with the country"""

    def __init__(self, region_client: RegionClient, zip_client: ZipLookupClient):
        self.region_client = region_client
        self.zip_client = zip_client
        self.countries: List[Country] = []
        self.available_states: List[RegionState] = []
        self.lookup_operation = Operation("zip_lookup")
        self._loaded = False

    @property
    def is_loading_location(self) -> bool:
        return self.lookup_operation.in_flight

    async def load_countries(self) -> List[Country]:
        """Load the reference table once; nothing is pre-selected"""
        if not self._loaded:
            self.countries = await self.region_client.get_countries()
            self.available_states = []
            self._loaded = True
        return self.countries

    def find_country(self, country_code: str) -> Optional[Country]:
        return next((c for c in self.countries if c.code == country_code), None)

    def update_available_states(self, country_code: str, current_state: str,
                                customer_info: CustomerInfo) -> List[RegionState]:
        """
        Switch the state list to the country and drop a state it does not contain.

        An unknown country has no states, so any selected state is cleared.
        """
        country = self.find_country(country_code)
        self.available_states = list(country.states) if country else []

        if current_state and not self.is_available_state(current_state):
            customer_info.state = ""
        return self.available_states

    def is_available_state(self, state_code: str) -> bool:
        return any(s.code == state_code for s in self.available_states)

    async def handle_zip_code_change(self, zip_code: str, country_code: str,
                                     customer_info: CustomerInfo) -> ZipChangeOutcome:
        """
        Record the raw zip and auto-fill city/state where lookup is supported.

        The raw value is written unconditionally. A lookup runs only for zips
        of at least five characters in a supported country. A failed or empty
        lookup leaves the fields for manual entry without reporting an error.
        """
        customer_info.zip = zip_code

        if len(zip_code) < MIN_LOOKUP_LENGTH or country_code not in ZIP_LOOKUP_COUNTRIES:
            return ZipChangeOutcome()

        try:
            async with self.lookup_operation.run():
                location = await self.zip_client.lookup(zip_code, country_code)
        except OperationInProgressError:
            return ZipChangeOutcome()

        if location is None:
            return ZipChangeOutcome(looked_up=True)

        state = normalize_state_name(location.state)
        customer_info.city = location.city
        # Lookup data can be stale; only accept a state the country offers
        customer_info.state = state if self.is_available_state(state) else ""

        return ZipChangeOutcome(
            looked_up=True,
            resolved=True,
            message=f"Auto-filled: {location.city}, {state}"
        )

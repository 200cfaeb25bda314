import logging

from tracksync.config import settings
from tracksync.models.shipment import CARRIERS, Carrier
from tracksync.services.carriers.base import CarrierAdapter, CarrierAPIError, CarrierConfig
from tracksync.services.carriers.dhl import DHLAdapter
from tracksync.services.carriers.fedex import FedExAdapter
from tracksync.services.carriers.ups import UPSAdapter
from tracksync.services.carriers.usps import USPSAdapter

logger = logging.getLogger(__name__)

ADAPTER_CLASSES: dict[str, type[CarrierAdapter]] = {
    "ups": UPSAdapter,
    "fedex": FedExAdapter,
    "dhl": DHLAdapter,
    "usps": USPSAdapter,
}


def config_from_settings(carrier: str) -> CarrierConfig:
    """Build an adapter config from the TRACKSYNC_<CARRIER>_* settings."""
    return CarrierConfig(
        api_key=getattr(settings, f"{carrier}_api_key"),
        base_url=getattr(settings, f"{carrier}_base_url"),
        timeout=settings.request_timeout_seconds,
        rate_limit_per_minute=getattr(settings, f"{carrier}_rate_limit_per_minute"),
    )


class CarrierAdapterFactory:
    """Creates and caches one adapter per carrier."""

    def __init__(self):
        self._adapters: dict[str, CarrierAdapter] = {}
        self._configs: dict[str, CarrierConfig] = {}

    def configure(self, carrier: Carrier, config: CarrierConfig) -> None:
        self._configs[carrier] = config
        # Force recreation with the new config
        self._adapters.pop(carrier, None)

    def get_adapter(self, carrier: str) -> CarrierAdapter:
        if carrier in self._adapters:
            return self._adapters[carrier]

        adapter_class = ADAPTER_CLASSES.get(carrier)
        if adapter_class is None:
            raise CarrierAPIError(f"Unsupported carrier: {carrier}", carrier, "UNSUPPORTED_CARRIER")

        config = self._configs.get(carrier) or config_from_settings(carrier)
        adapter = adapter_class(config)
        self._adapters[carrier] = adapter
        return adapter

    def config_for(self, carrier: str) -> CarrierConfig:
        return self.get_adapter(carrier).config

    def clear_cache(self) -> None:
        self._adapters.clear()

    @staticmethod
    def supported_carriers() -> tuple[Carrier, ...]:
        return CARRIERS

    @staticmethod
    def is_supported(carrier: str | None) -> bool:
        return carrier in ADAPTER_CLASSES

    def validate_tracking_number(self, tracking_number: str, carrier: str) -> bool:
        try:
            return self.get_adapter(carrier).validate_tracking_number(tracking_number)
        except CarrierAPIError as e:
            logger.error(f"Error validating tracking number for {carrier}: {e}")
            return False

    def check_all_availability(self) -> dict[str, bool]:
        return {carrier: self.get_adapter(carrier).is_available() for carrier in CARRIERS}


adapter_factory = CarrierAdapterFactory()

"""
Per-endpoint pricing and offer construction
"""

from typing import Dict, List, Optional, TypeVar

from paygate.config import GatewayConfig
from paygate.payments.models import PaymentRequirement, RailType
from paygate.payments.networks import network_matches
from paygate.payments.registry import SchemeRegistry

T = TypeVar("T")


def lookup_endpoint(table: Dict[str, T], method: str, path: str) -> Optional[T]:
    """
    Find the entry for a request in a per-endpoint table.

    Precedence: "METHOD:/path", "/path", the longest "/prefix/*" pattern
    whose prefix the path starts with, then "default".
    """
    if not table:
        return None
    key = f"{method.upper()}:{path}"
    if key in table:
        return table[key]
    if path in table:
        return table[path]

    best: Optional[str] = None
    for pattern in table:
        if pattern.endswith("/*") and path.startswith(pattern[:-2]):
            if best is None or len(pattern) > len(best):
                best = pattern
    if best is not None:
        return table[best]
    return table.get("default")


class PricingPolicy:
    """Resolves price, schemes and networks for a request and builds its offers"""

    def __init__(self, config: GatewayConfig, registry: SchemeRegistry):
        self.config = config
        self.registry = registry

    def price_for(self, method: str, path: str) -> int:
        price = lookup_endpoint(self.config.endpoint_prices, method, path)
        return self.config.price_per_request if price is None else price

    def schemes_for(self, method: str, path: str) -> List[str]:
        return lookup_endpoint(self.config.endpoint_schemes, method, path) or self.config.effective_schemes

    def networks_for(self, method: str, path: str) -> List[str]:
        return lookup_endpoint(self.config.endpoint_networks, method, path) or self.config.effective_networks

    def accepts_network(self, method: str, path: str, network: str) -> bool:
        return any(network_matches(n, network) for n in self.networks_for(method, path))

    def requirement(self, scheme: str, network: str, resource: str, price: int) -> PaymentRequirement:
        extra: Dict[str, str] = {}
        facilitator = self.facilitator_url_for(network)
        verifier = self.registry.get(scheme)
        if verifier is not None and verifier.rail_type == RailType.FIAT:
            extra["currency"] = self.config.currency
        elif facilitator:
            extra["facilitatorUrl"] = facilitator

        return PaymentRequirement(
            scheme=scheme,
            network=network,
            max_amount_required=str(price),
            resource=resource,
            description=self.config.offer_description(price),
            pay_to=self.config.recipient_for(network),
            max_timeout_seconds=self.config.max_timeout_seconds,
            asset=self.config.asset or None,
            extra=extra or None,
        )

    def facilitator_url_for(self, network: str) -> str:
        urls = self.config.facilitator_urls
        if network in urls:
            return urls[network]
        for pattern, url in urls.items():
            if network_matches(pattern, network):
                return url
        return self.config.facilitator_url

    def offers(self, method: str, path: str, price: Optional[int] = None) -> List[PaymentRequirement]:
        """
        Every scheme x network combination accepted for the endpoint. When a
        scheme is registered, combinations its verifier cannot serve are left
        out.
        """
        price = self.price_for(method, path) if price is None else price
        offers = []
        for scheme in self.schemes_for(method, path):
            verifier = self.registry.get(scheme)
            for network in self.networks_for(method, path):
                if verifier is not None and not verifier.supports_network(network):
                    continue
                offers.append(self.requirement(scheme, network, path, price))
        return offers

    def match_offer(
        self, offers: List[PaymentRequirement], scheme: str, network: str
    ) -> Optional[PaymentRequirement]:
        """The offer a proof claims to satisfy"""
        for offer in offers:
            if offer.scheme == scheme and (not network or network_matches(offer.network, network)):
                return offer
        return None

"""
Scheme/rail registry

Maps a scheme identifier to the verifier that handles it. The registry is
built once at startup and passed to the gate; reads are safe while a
registration is in progress.
"""

import threading
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

import structlog

from paygate.payments.errors import SchemeUnsupported
from paygate.payments.models import (
    PaymentProof,
    PaymentRequirement,
    RailType,
    SettlementResult,
    VerificationResult,
)
from paygate.payments.networks import network_matches

logger = structlog.get_logger()


class PaymentVerifier(ABC):
    """A scheme implementation: verifies proofs and optionally captures them"""

    scheme: str = ""
    rail_type: RailType = RailType.CRYPTO
    display_name: str = ""

    @abstractmethod
    def supported_networks(self) -> List[str]:
        """Networks this verifier accepts; may contain family wildcards"""

    @abstractmethod
    async def verify(
        self, proof: PaymentProof, requirement: PaymentRequirement
    ) -> VerificationResult:
        """
        Check a proof against the requirement it claims to satisfy.

        Implementations return valid=False for a rejected proof and raise
        CollaboratorError when the answer could not be obtained.
        """

    async def settle(
        self,
        proof: PaymentProof,
        requirement: PaymentRequirement,
        verification: VerificationResult,
    ) -> SettlementResult:
        """Capture a verified payment. Schemes without a capture step refuse."""
        return SettlementResult(success=False, message=f"{self.scheme} does not support settlement")

    def supports_network(self, network: str) -> bool:
        return any(network_matches(pattern, network) for pattern in self.supported_networks())

    def describe(self) -> Dict[str, object]:
        return {
            "id": self.scheme,
            "displayName": self.display_name or self.scheme,
            "type": self.rail_type.value,
            "networks": self.supported_networks(),
        }


class SchemeRegistry:
    """Thread-safe scheme identifier -> verifier map"""

    def __init__(self):
        self._lock = threading.RLock()
        self._verifiers: Dict[str, PaymentVerifier] = {}

    def register(self, verifier: PaymentVerifier) -> None:
        """Register a verifier, replacing any previous one for the same scheme"""
        if not verifier.scheme:
            raise ValueError("verifier has no scheme identifier")
        with self._lock:
            replaced = verifier.scheme in self._verifiers
            self._verifiers[verifier.scheme] = verifier
        logger.info(
            "scheme_registered",
            scheme=verifier.scheme,
            rail=verifier.rail_type.value,
            replaced=replaced,
        )

    def unregister(self, scheme: str) -> bool:
        with self._lock:
            return self._verifiers.pop(scheme, None) is not None

    def get(self, scheme: str) -> Optional[PaymentVerifier]:
        with self._lock:
            return self._verifiers.get(scheme)

    def list_schemes(self) -> List[str]:
        with self._lock:
            return sorted(self._verifiers)

    def verifiers(self) -> List[PaymentVerifier]:
        with self._lock:
            return [self._verifiers[s] for s in sorted(self._verifiers)]

    def list_by_rail_type(self, rail_type: RailType) -> List[PaymentVerifier]:
        return [v for v in self.verifiers() if v.rail_type == rail_type]

    def networks_for(self, scheme: str) -> List[str]:
        verifier = self.get(scheme)
        return verifier.supported_networks() if verifier else []

    def supports_network(self, network: str) -> bool:
        """True if any registered scheme accepts the network"""
        return any(v.supports_network(network) for v in self.verifiers())

    def resolve(self, scheme: str, network: str = "") -> PaymentVerifier:
        """
        Find the verifier for a scheme and check it accepts the network.

        An empty network skips the network check (opaque tokens carry none).

        Raises:
            SchemeUnsupported: unknown scheme or network outside its set
        """
        verifier = self.get(scheme)
        if verifier is None:
            raise SchemeUnsupported(f"unsupported payment scheme: {scheme}")
        if network and not verifier.supports_network(network):
            raise SchemeUnsupported(f"scheme {scheme} does not support network {network}")
        return verifier

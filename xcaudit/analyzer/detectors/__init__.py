"""Pluggable contract detectors, discovered by the registry.

  - Bridge (5):     XC-BRIDGE-001..005
  - Dependency (3): XC-DEP-001..003
  - Signature (2):  XC-SIG-001..002
"""

from xcaudit.analyzer.detectors.bridge import (
    BridgeMessageReplayDetector,
    LayerZeroEndpointDetector,
    SourceChainValidationDetector,
    WormholeEmitterValidationDetector,
    WormholeGuardianCheckDetector,
)
from xcaudit.analyzer.detectors.dependency import (
    DelegatecallStorageCollisionDetector,
    MissingAccessControlDetector,
    UncheckedLowLevelCallDetector,
)
from xcaudit.analyzer.detectors.signature import SignatureMalleabilityDetector, SignatureReplayDetector

__all__ = [
    "BridgeMessageReplayDetector",
    "DelegatecallStorageCollisionDetector",
    "LayerZeroEndpointDetector",
    "MissingAccessControlDetector",
    "SignatureMalleabilityDetector",
    "SignatureReplayDetector",
    "SourceChainValidationDetector",
    "UncheckedLowLevelCallDetector",
    "WormholeEmitterValidationDetector",
    "WormholeGuardianCheckDetector",
]

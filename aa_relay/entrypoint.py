# EntryPoint addresses and version detection
import logging
from enum import Enum

from web3 import Web3

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


class EntryPointVersion(str, Enum):
    V06 = "v0.6"
    V07 = "v0.7"


ENTRY_POINT_V06 = Web3.to_checksum_address("0x5FF137D4b0FDCD49DcA30c7CF57E578a026d2789")
ENTRY_POINT_V07 = Web3.to_checksum_address("0x0000000071727De22E5E9d8BAf0edAc6f37da032")

KNOWN_ENTRY_POINTS = {
    ENTRY_POINT_V06.lower(): EntryPointVersion.V06,
    ENTRY_POINT_V07.lower(): EntryPointVersion.V07,
}

# UserOperationEvent(bytes32 indexed userOpHash, address indexed sender, address indexed paymaster,
#                    uint256 nonce, bool success, uint256 actualGasCost, uint256 actualGasUsed)
# Emitted with the same signature by v0.6 and v0.7.
USER_OPERATION_EVENT_TOPIC = "0x49628fd1471006c1482da88028e9ce4dbb080b815c9b0344d39e5a8e6ec1419f"


def detect_entry_point_version(address):
    """Map an EntryPoint address to its version. Unknown addresses are treated as v0.6."""
    version = KNOWN_ENTRY_POINTS.get(str(address).strip().lower())
    if version is None:
        logger.warning("Unknown EntryPoint %s, assuming %s", address, EntryPointVersion.V06.value)
        return EntryPointVersion.V06
    return version

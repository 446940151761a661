# The smart account side: address, deployment state, nonce and call wrapping.
# Deriving a Safe address and building its initCode is left to the caller.
import typing
from dataclasses import dataclass

from eth_abi import abi as ethabi
from web3 import Web3

from aa_relay.userop import as_bytes


def selector(name):
    """Return a Solidity-style function selector, e.g. 0x1234abcd = keccak256("something(uint,bool")"""
    name_hash = Web3.to_hex(Web3.keccak(text=name))
    return Web3.to_bytes(hexstr=str(name_hash)[:10])


def encode_execute_user_op(to, value, data, operation=0):
    """callData for the Safe 4337 module's executeUserOp(address,uint256,bytes,uint8)"""
    return selector("executeUserOp(address,uint256,bytes,uint8)") + ethabi.encode(
        ['address', 'uint256', 'bytes', 'uint8'],
        [Web3.to_checksum_address(to), value, as_bytes(data), operation])


class AccountFactory(typing.Protocol):
    def get_address(self) -> str: ...
    def get_init_code(self) -> bytes: ...
    def is_deployed(self) -> bool: ...
    def get_nonce(self, entry_point: str) -> int: ...


@dataclass
class StaticAccount:
    """Account values worked out elsewhere and passed in as-is"""
    address: str
    nonce: int = 0
    init_code: bytes = b""
    deployed: bool = True

    def get_address(self):
        return Web3.to_checksum_address(self.address)

    def get_init_code(self):
        return as_bytes(self.init_code)

    def is_deployed(self):
        return self.deployed

    def get_nonce(self, entry_point):
        return self.nonce


class NodeAccount:
    """Reads deployment state and the EntryPoint nonce from an Ethereum node"""

    def __init__(self, w3, address, init_code=b"", nonce_key=0):
        self.w3 = w3
        self.address = Web3.to_checksum_address(address)
        self.init_code = as_bytes(init_code)
        self.nonce_key = nonce_key

    def get_address(self):
        return self.address

    def get_init_code(self):
        return self.init_code

    def is_deployed(self):
        return len(self.w3.eth.get_code(self.address)) > 0

    def get_nonce(self, entry_point):
        """Returns the keyed AA nonce for the account"""
        calldata = selector("getNonce(address,uint192)") + ethabi.encode(
            ['address', 'uint192'], [self.address, self.nonce_key])
        ret = self.w3.eth.call({'to': Web3.to_checksum_address(entry_point), 'data': calldata})
        return Web3.to_int(ret)

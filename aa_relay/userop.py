# Canonical UserOperation and its version specific JSON-RPC wire forms
import dataclasses
from dataclasses import dataclass
from typing import ClassVar, NamedTuple, Optional

from web3 import Web3

from aa_relay.entrypoint import ZERO_ADDRESS, EntryPointVersion

ADDRESS_LENGTH = 20
PAYMASTER_GAS_FIELD_LENGTH = 16

# Dummy signature, per Alchemy AA documentation. Only ever sent with zeroed gas
# limits, so a third party can't submit it as a real operation.
DUMMY_SIGNATURE = Web3.to_bytes(hexstr="0xfffffffffffffffffffffffffffffff0000000000000000000000000000000007aaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaa1c")

# Fields covered by the SafeOp signature. Changing any of them invalidates it.
SIGNED_FIELDS = frozenset([
    'sender',
    'nonce',
    'init_code',
    'call_data',
    'call_gas_limit',
    'verification_gas_limit',
    'pre_verification_gas',
    'max_fee_per_gas',
    'max_priority_fee_per_gas',
    'paymaster_and_data',
])


def to_hex_int(value):
    """0x-prefixed lowercase hex without leading zeros, 0 -> '0x0'"""
    return Web3.to_hex(int(value))


def to_hex_bytes(value):
    return Web3.to_hex(as_bytes(value))


def as_bytes(value):
    """Accepts bytes or a 0x-prefixed hex string"""
    if value is None:
        return b""
    if isinstance(value, str):
        return Web3.to_bytes(hexstr=value)
    return bytes(value)


def as_int(value):
    """Accepts an int or a hex string"""
    if isinstance(value, str):
        return Web3.to_int(hexstr=value)
    return int(value)


def is_zero_address(address):
    return address is None or str(address).lower() == ZERO_ADDRESS


@dataclass(frozen=True)
class UserOperation:
    """Canonical form of a UserOperation: integers and raw bytes.

    Instances are immutable. Use replace_fields() to derive a new operation;
    the signature is dropped whenever a signed field changes, so an operation
    carrying a signature was always signed over its current values.
    """
    sender: str
    nonce: int
    init_code: bytes = b""
    call_data: bytes = b""
    call_gas_limit: int = 0
    verification_gas_limit: int = 0
    pre_verification_gas: int = 0
    max_fee_per_gas: int = 0
    max_priority_fee_per_gas: int = 0
    paymaster_and_data: bytes = b""
    signature: bytes = b""

    def __post_init__(self):
        object.__setattr__(self, 'sender', Web3.to_checksum_address(self.sender))
        for name in ('init_code', 'call_data', 'paymaster_and_data', 'signature'):
            object.__setattr__(self, name, as_bytes(getattr(self, name)))
        for name in ('nonce', 'call_gas_limit', 'verification_gas_limit', 'pre_verification_gas',
                     'max_fee_per_gas', 'max_priority_fee_per_gas'):
            value = as_int(getattr(self, name))
            if value < 0:
                raise ValueError(f"{name} must not be negative")
            object.__setattr__(self, name, value)

    @property
    def is_draft(self):
        return not self.signature or self.signature == DUMMY_SIGNATURE

    def replace_fields(self, **changes):
        """Returns a copy with the given fields changed"""
        updated = dataclasses.replace(self, **changes)
        if 'signature' not in changes:
            for name in SIGNED_FIELDS & changes.keys():
                if getattr(updated, name) != getattr(self, name):
                    return dataclasses.replace(updated, signature=b"")
        return updated

    def with_signature(self, signature):
        return dataclasses.replace(self, signature=as_bytes(signature))


def parse_init_code(init_code):
    """Splits initCode into (factory, factoryData). Anything shorter than an address gives (None, None)."""
    data = as_bytes(init_code)
    if len(data) < ADDRESS_LENGTH:
        return None, None
    return Web3.to_checksum_address(data[:ADDRESS_LENGTH]), data[ADDRESS_LENGTH:]


class PaymasterFields(NamedTuple):
    paymaster: Optional[str] = None
    verification_gas_limit: Optional[int] = None
    post_op_gas_limit: Optional[int] = None
    data: Optional[bytes] = None


def parse_paymaster_and_data(paymaster_and_data):
    """Splits v0.7 paymasterAndData into paymaster | verificationGasLimit(16) | postOpGasLimit(16) | data.

    Short input is not an error: under 20 bytes everything is absent, and when
    fewer than 32 bytes follow the address they are all returned as data.
    """
    data = as_bytes(paymaster_and_data)
    if len(data) < ADDRESS_LENGTH:
        return PaymasterFields()
    paymaster = Web3.to_checksum_address(data[:ADDRESS_LENGTH])
    rest = data[ADDRESS_LENGTH:]
    if len(rest) < 2 * PAYMASTER_GAS_FIELD_LENGTH:
        return PaymasterFields(paymaster=paymaster, data=rest)
    return PaymasterFields(
        paymaster=paymaster,
        verification_gas_limit=int.from_bytes(rest[:PAYMASTER_GAS_FIELD_LENGTH], 'big'),
        post_op_gas_limit=int.from_bytes(rest[PAYMASTER_GAS_FIELD_LENGTH:2 * PAYMASTER_GAS_FIELD_LENGTH], 'big'),
        data=rest[2 * PAYMASTER_GAS_FIELD_LENGTH:],
    )


def pack_paymaster_and_data(paymaster, verification_gas_limit=None, post_op_gas_limit=None, data=b""):
    if is_zero_address(paymaster):
        return b""
    packed = Web3.to_bytes(hexstr=Web3.to_checksum_address(paymaster))
    if verification_gas_limit is not None or post_op_gas_limit is not None:
        packed += int(verification_gas_limit or 0).to_bytes(PAYMASTER_GAS_FIELD_LENGTH, 'big')
        packed += int(post_op_gas_limit or 0).to_bytes(PAYMASTER_GAS_FIELD_LENGTH, 'big')
    return packed + as_bytes(data)


@dataclass(frozen=True)
class V06Operation:
    """EntryPoint v0.6 wire form: initCode and paymasterAndData are sent as-is"""
    version: ClassVar[EntryPointVersion] = EntryPointVersion.V06

    sender: str
    nonce: int
    init_code: bytes
    call_data: bytes
    call_gas_limit: int
    verification_gas_limit: int
    pre_verification_gas: int
    max_fee_per_gas: int
    max_priority_fee_per_gas: int
    paymaster_and_data: bytes
    signature: bytes

    @classmethod
    def from_user_operation(cls, op):
        return cls(
            sender=op.sender,
            nonce=op.nonce,
            init_code=op.init_code,
            call_data=op.call_data,
            call_gas_limit=op.call_gas_limit,
            verification_gas_limit=op.verification_gas_limit,
            pre_verification_gas=op.pre_verification_gas,
            max_fee_per_gas=op.max_fee_per_gas,
            max_priority_fee_per_gas=op.max_priority_fee_per_gas,
            paymaster_and_data=op.paymaster_and_data,
            signature=op.signature,
        )

    def to_user_operation(self):
        return UserOperation(
            sender=self.sender,
            nonce=self.nonce,
            init_code=self.init_code,
            call_data=self.call_data,
            call_gas_limit=self.call_gas_limit,
            verification_gas_limit=self.verification_gas_limit,
            pre_verification_gas=self.pre_verification_gas,
            max_fee_per_gas=self.max_fee_per_gas,
            max_priority_fee_per_gas=self.max_priority_fee_per_gas,
            paymaster_and_data=self.paymaster_and_data,
            signature=self.signature,
        )

    def to_rpc(self):
        return {
            'sender': self.sender,
            'nonce': to_hex_int(self.nonce),
            'initCode': to_hex_bytes(self.init_code),
            'callData': to_hex_bytes(self.call_data),
            'callGasLimit': to_hex_int(self.call_gas_limit),
            'verificationGasLimit': to_hex_int(self.verification_gas_limit),
            'preVerificationGas': to_hex_int(self.pre_verification_gas),
            'maxFeePerGas': to_hex_int(self.max_fee_per_gas),
            'maxPriorityFeePerGas': to_hex_int(self.max_priority_fee_per_gas),
            'paymasterAndData': to_hex_bytes(self.paymaster_and_data),
            'signature': to_hex_bytes(self.signature),
        }

    @classmethod
    def from_rpc(cls, payload):
        return cls(
            sender=Web3.to_checksum_address(payload['sender']),
            nonce=as_int(payload['nonce']),
            init_code=as_bytes(payload.get('initCode', '0x')),
            call_data=as_bytes(payload['callData']),
            call_gas_limit=as_int(payload.get('callGasLimit', '0x0')),
            verification_gas_limit=as_int(payload.get('verificationGasLimit', '0x0')),
            pre_verification_gas=as_int(payload.get('preVerificationGas', '0x0')),
            max_fee_per_gas=as_int(payload.get('maxFeePerGas', '0x0')),
            max_priority_fee_per_gas=as_int(payload.get('maxPriorityFeePerGas', '0x0')),
            paymaster_and_data=as_bytes(payload.get('paymasterAndData', '0x')),
            signature=as_bytes(payload.get('signature', '0x')),
        )


@dataclass(frozen=True)
class V07Operation:
    """EntryPoint v0.7 wire form, with initCode and paymasterAndData unpacked"""
    version: ClassVar[EntryPointVersion] = EntryPointVersion.V07

    sender: str
    nonce: int
    factory: Optional[str]
    factory_data: Optional[bytes]
    call_data: bytes
    call_gas_limit: int
    verification_gas_limit: int
    pre_verification_gas: int
    max_fee_per_gas: int
    max_priority_fee_per_gas: int
    paymaster: Optional[str]
    paymaster_verification_gas_limit: Optional[int]
    paymaster_post_op_gas_limit: Optional[int]
    paymaster_data: Optional[bytes]
    signature: bytes

    @classmethod
    def from_user_operation(cls, op):
        factory, factory_data = parse_init_code(op.init_code)
        pm = parse_paymaster_and_data(op.paymaster_and_data)
        return cls(
            sender=op.sender,
            nonce=op.nonce,
            factory=factory,
            factory_data=factory_data,
            call_data=op.call_data,
            call_gas_limit=op.call_gas_limit,
            verification_gas_limit=op.verification_gas_limit,
            pre_verification_gas=op.pre_verification_gas,
            max_fee_per_gas=op.max_fee_per_gas,
            max_priority_fee_per_gas=op.max_priority_fee_per_gas,
            paymaster=pm.paymaster,
            paymaster_verification_gas_limit=pm.verification_gas_limit,
            paymaster_post_op_gas_limit=pm.post_op_gas_limit,
            paymaster_data=pm.data,
            signature=op.signature,
        )

    def to_user_operation(self):
        init_code = b""
        if not is_zero_address(self.factory):
            init_code = Web3.to_bytes(hexstr=self.factory) + as_bytes(self.factory_data)
        return UserOperation(
            sender=self.sender,
            nonce=self.nonce,
            init_code=init_code,
            call_data=self.call_data,
            call_gas_limit=self.call_gas_limit,
            verification_gas_limit=self.verification_gas_limit,
            pre_verification_gas=self.pre_verification_gas,
            max_fee_per_gas=self.max_fee_per_gas,
            max_priority_fee_per_gas=self.max_priority_fee_per_gas,
            paymaster_and_data=pack_paymaster_and_data(
                self.paymaster,
                self.paymaster_verification_gas_limit,
                self.paymaster_post_op_gas_limit,
                self.paymaster_data,
            ),
            signature=self.signature,
        )

    def to_rpc(self):
        payload = {
            'sender': self.sender,
            'nonce': to_hex_int(self.nonce),
            'factory': self.factory or ZERO_ADDRESS,
            'factoryData': to_hex_bytes(self.factory_data),
            'callData': to_hex_bytes(self.call_data),
            'callGasLimit': to_hex_int(self.call_gas_limit),
            'verificationGasLimit': to_hex_int(self.verification_gas_limit),
            'preVerificationGas': to_hex_int(self.pre_verification_gas),
            'maxFeePerGas': to_hex_int(self.max_fee_per_gas),
            'maxPriorityFeePerGas': to_hex_int(self.max_priority_fee_per_gas),
            'paymaster': self.paymaster or ZERO_ADDRESS,
            'paymasterData': to_hex_bytes(self.paymaster_data),
            'signature': to_hex_bytes(self.signature),
        }
        # Gas limits have no "absent" sentinel that differs from zero, so they
        # are left out unless paymasterAndData actually carried them.
        if self.paymaster_verification_gas_limit is not None:
            payload['paymasterVerificationGasLimit'] = to_hex_int(self.paymaster_verification_gas_limit)
        if self.paymaster_post_op_gas_limit is not None:
            payload['paymasterPostOpGasLimit'] = to_hex_int(self.paymaster_post_op_gas_limit)
        return payload

    @classmethod
    def from_rpc(cls, payload):
        factory = payload.get('factory')
        factory = None if is_zero_address(factory) else Web3.to_checksum_address(factory)
        paymaster = payload.get('paymaster')
        paymaster = None if is_zero_address(paymaster) else Web3.to_checksum_address(paymaster)
        pm_vgl = payload.get('paymasterVerificationGasLimit')
        pm_pogl = payload.get('paymasterPostOpGasLimit')
        return cls(
            sender=Web3.to_checksum_address(payload['sender']),
            nonce=as_int(payload['nonce']),
            factory=factory,
            factory_data=as_bytes(payload.get('factoryData')) if factory else None,
            call_data=as_bytes(payload['callData']),
            call_gas_limit=as_int(payload.get('callGasLimit', '0x0')),
            verification_gas_limit=as_int(payload.get('verificationGasLimit', '0x0')),
            pre_verification_gas=as_int(payload.get('preVerificationGas', '0x0')),
            max_fee_per_gas=as_int(payload.get('maxFeePerGas', '0x0')),
            max_priority_fee_per_gas=as_int(payload.get('maxPriorityFeePerGas', '0x0')),
            paymaster=paymaster,
            paymaster_verification_gas_limit=as_int(pm_vgl) if paymaster and pm_vgl is not None else None,
            paymaster_post_op_gas_limit=as_int(pm_pogl) if paymaster and pm_pogl is not None else None,
            paymaster_data=as_bytes(payload.get('paymasterData')) if paymaster else None,
            signature=as_bytes(payload.get('signature', '0x')),
        )


WIRE_FORMATS = {
    EntryPointVersion.V06: V06Operation,
    EntryPointVersion.V07: V07Operation,
}


def to_wire(op, version):
    """Converts a canonical UserOperation to the wire form for an EntryPoint version"""
    return WIRE_FORMATS[EntryPointVersion(version)].from_user_operation(op)


def from_wire(payload, version):
    """Decodes a wire dict back into a canonical UserOperation"""
    return WIRE_FORMATS[EntryPointVersion(version)].from_rpc(payload).to_user_operation()

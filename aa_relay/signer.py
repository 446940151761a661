# EIP-712 SafeOp signatures for Safe accounts using the 4337 module
from typing import NamedTuple

import eth_account
from eth_account.messages import encode_typed_data
from web3 import Web3

from aa_relay.userop import as_bytes

# validAfter / validUntil both zero: no time restriction
VALID_AFTER = 0
VALID_UNTIL = 0
VALIDITY_PREFIX = b"\x00" * 12

EIP712_SAFE_OPERATION_TYPE = {
    'EIP712Domain': [
        {'name': 'chainId', 'type': 'uint256'},
        {'name': 'verifyingContract', 'type': 'address'},
    ],
    'SafeOp': [
        {'type': 'address', 'name': 'safe'},
        {'type': 'uint256', 'name': 'nonce'},
        {'type': 'bytes', 'name': 'initCode'},
        {'type': 'bytes', 'name': 'callData'},
        {'type': 'uint256', 'name': 'callGasLimit'},
        {'type': 'uint256', 'name': 'verificationGasLimit'},
        {'type': 'uint256', 'name': 'preVerificationGas'},
        {'type': 'uint256', 'name': 'maxFeePerGas'},
        {'type': 'uint256', 'name': 'maxPriorityFeePerGas'},
        {'type': 'bytes', 'name': 'paymasterAndData'},
        {'type': 'uint48', 'name': 'validAfter'},
        {'type': 'uint48', 'name': 'validUntil'},
        {'type': 'address', 'name': 'entryPoint'},
    ],
}


class SignatureEntry(NamedTuple):
    signer: str
    data: bytes


def safe_op_typed_data(op, chain_id, entry_point, module_address):
    """Full EIP-712 message for a SafeOp, scoped to the 4337 module on one chain"""
    return {
        'types': EIP712_SAFE_OPERATION_TYPE,
        'primaryType': 'SafeOp',
        'domain': {
            'chainId': int(chain_id),
            'verifyingContract': Web3.to_checksum_address(module_address),
        },
        'message': {
            'safe': op.sender,
            'nonce': op.nonce,
            'initCode': op.init_code,
            'callData': op.call_data,
            'callGasLimit': op.call_gas_limit,
            'verificationGasLimit': op.verification_gas_limit,
            'preVerificationGas': op.pre_verification_gas,
            'maxFeePerGas': op.max_fee_per_gas,
            'maxPriorityFeePerGas': op.max_priority_fee_per_gas,
            'paymasterAndData': op.paymaster_and_data,
            'validAfter': VALID_AFTER,
            'validUntil': VALID_UNTIL,
            'entryPoint': Web3.to_checksum_address(entry_point),
        },
    }


def as_account(signer):
    """Accepts a private key or an already loaded LocalAccount"""
    if isinstance(signer, (str, bytes)):
        return eth_account.Account.from_key(signer)
    return signer


def sign_safe_operation(op, signer, chain_id, entry_point, module_address):
    """Signs a SafeOp with one owner key, returning a SignatureEntry"""
    acct = as_account(signer)
    e_msg = encode_typed_data(full_message=safe_op_typed_data(op, chain_id, entry_point, module_address))
    sig = acct.sign_message(e_msg)
    return SignatureEntry(signer=acct.address, data=bytes(sig.signature))


def combine_signatures(entries):
    """Packs owner signatures the way the Safe 4337 module checks them.

    Signatures are sorted by owner address (case-insensitive, ascending) and
    appended to a 12 byte validAfter/validUntil prefix. The module rejects
    signatures in any other order.
    """
    ordered = sorted(entries, key=lambda entry: entry.signer.lower())
    return VALIDITY_PREFIX + b"".join(as_bytes(entry.data) for entry in ordered)


def sign_user_operation(op, signers, chain_id, entry_point, module_address):
    """Signs a UserOperation with one or more owners, returning the packed signature bytes"""
    if not isinstance(signers, (list, tuple)):
        signers = [signers]
    entries = [sign_safe_operation(op, s, chain_id, entry_point, module_address) for s in signers]
    return combine_signatures(entries)

# Gas estimation through the relay, and applying the estimate to a draft op
import logging
from dataclasses import dataclass
from typing import Optional

from aa_relay.entrypoint import EntryPointVersion, detect_entry_point_version
from aa_relay.relay import relay_error_message
from aa_relay.userop import (DUMMY_SIGNATURE, as_int, pack_paymaster_and_data, parse_paymaster_and_data,
                             to_hex_int, to_wire)

logger = logging.getLogger(__name__)

GAS_BUFFER_PERCENT = 10

# Conservative values used when a v0.7 estimate can't be obtained
V07_FALLBACK_PRE_VERIFICATION_GAS = 50000
V07_FALLBACK_VERIFICATION_GAS_LIMIT = 30400
V07_FALLBACK_CALL_GAS_LIMIT = 350000


def _optional_int(value):
    if value is None:
        return None
    if isinstance(value, str) and value.startswith("0x0x"):
        # Gelato sometimes doubles the prefix
        value = value[2:]
    if not isinstance(value, (str, int)) or isinstance(value, bool):
        raise ValueError(f"not a hex quantity: {value!r}")
    return as_int(value)


@dataclass(frozen=True)
class GasEstimate:
    pre_verification_gas: Optional[int] = None
    call_gas_limit: Optional[int] = None
    verification_gas_limit: Optional[int] = None
    paymaster_verification_gas_limit: Optional[int] = None
    paymaster_post_op_gas_limit: Optional[int] = None

    @classmethod
    def from_rpc(cls, result):
        # Some bundlers still report 'verificationGas' instead of 'verificationGasLimit'
        vgl = result.get('verificationGasLimit')
        if vgl is None:
            vgl = result.get('verificationGas')
        return cls(
            pre_verification_gas=_optional_int(result.get('preVerificationGas')),
            call_gas_limit=_optional_int(result.get('callGasLimit')),
            verification_gas_limit=_optional_int(vgl),
            paymaster_verification_gas_limit=_optional_int(result.get('paymasterVerificationGasLimit')),
            paymaster_post_op_gas_limit=_optional_int(result.get('paymasterPostOpGasLimit')),
        )

    def to_rpc(self):
        names = {
            'preVerificationGas': self.pre_verification_gas,
            'callGasLimit': self.call_gas_limit,
            'verificationGasLimit': self.verification_gas_limit,
            'paymasterVerificationGasLimit': self.paymaster_verification_gas_limit,
            'paymasterPostOpGasLimit': self.paymaster_post_op_gas_limit,
        }
        return {k: to_hex_int(v) for k, v in names.items() if v is not None}

    def with_fallback(self, fallback):
        """Fills absent core fields from another estimate"""
        return GasEstimate(
            pre_verification_gas=self.pre_verification_gas if self.pre_verification_gas is not None
            else fallback.pre_verification_gas,
            call_gas_limit=self.call_gas_limit if self.call_gas_limit is not None else fallback.call_gas_limit,
            verification_gas_limit=self.verification_gas_limit if self.verification_gas_limit is not None
            else fallback.verification_gas_limit,
            paymaster_verification_gas_limit=self.paymaster_verification_gas_limit,
            paymaster_post_op_gas_limit=self.paymaster_post_op_gas_limit,
        )


V07_FALLBACK_ESTIMATE = GasEstimate(
    pre_verification_gas=V07_FALLBACK_PRE_VERIFICATION_GAS,
    call_gas_limit=V07_FALLBACK_CALL_GAS_LIMIT,
    verification_gas_limit=V07_FALLBACK_VERIFICATION_GAS_LIMIT,
)


class GasEstimator:
    def __init__(self, relay):
        self.relay = relay

    def estimation_request(self, entry_point, op, version):
        """Wire params for eth_estimateUserOperationGas: gas and fee fields zeroed"""
        zeroed = op.replace_fields(
            call_gas_limit=0,
            verification_gas_limit=0,
            pre_verification_gas=0,
            max_fee_per_gas=0,
            max_priority_fee_per_gas=0,
            signature=op.signature or DUMMY_SIGNATURE,
        )
        return [to_wire(zeroed, version).to_rpc(), entry_point]

    def estimate(self, entry_point, op, version=None):
        """Asks the relay for gas values.

        Failures are not raised. For v0.6 the result is None; v0.7 falls back
        to fixed conservative values (and fills in any a partial answer left out).
        """
        version = EntryPointVersion(version) if version else detect_entry_point_version(entry_point)
        payload = self.relay.call("eth_estimateUserOperationGas", self.estimation_request(entry_point, op, version))

        result = payload.get('result') if payload else None
        if isinstance(result, dict) and result:
            try:
                estimate = GasEstimate.from_rpc(result)
            except (TypeError, ValueError) as e:
                logger.error("*** Unparseable gas estimate %s: %s", result, e)
                estimate = None
        else:
            logger.error("*** eth_estimateUserOperationGas failed: %s", relay_error_message(payload) or payload)
            estimate = None

        if version == EntryPointVersion.V07:
            if estimate is None:
                logger.warning("Using fallback gas values for %s", version.value)
                return V07_FALLBACK_ESTIMATE
            return estimate.with_fallback(V07_FALLBACK_ESTIMATE)
        return estimate


def add_buffer(value, percent=GAS_BUFFER_PERCENT):
    return value * (100 + percent) // 100


def apply_gas_estimate(op, estimate, buffer_percent=GAS_BUFFER_PERCENT):
    """Patches a draft op with estimated gas, adding a safety margin to the limits.

    A zero preVerificationGas is what the relay reports when the fee is
    settled post-execution through 1Balance sponsorship; the draft value is
    kept in that case. The returned op is unsigned.
    """
    changes = {'signature': b""}

    if estimate.pre_verification_gas:
        changes['pre_verification_gas'] = estimate.pre_verification_gas
    else:
        logger.info("preVerificationGas is 0, keeping %d (fee settled post-execution)", op.pre_verification_gas)

    if estimate.call_gas_limit is not None:
        changes['call_gas_limit'] = add_buffer(estimate.call_gas_limit, buffer_percent)
    if estimate.verification_gas_limit is not None:
        changes['verification_gas_limit'] = add_buffer(estimate.verification_gas_limit, buffer_percent)

    pm = parse_paymaster_and_data(op.paymaster_and_data)
    if pm.paymaster and (estimate.paymaster_verification_gas_limit is not None
                         or estimate.paymaster_post_op_gas_limit is not None):
        pm_vgl = pm.verification_gas_limit or 0
        pm_pogl = pm.post_op_gas_limit or 0
        if estimate.paymaster_verification_gas_limit is not None:
            pm_vgl = add_buffer(estimate.paymaster_verification_gas_limit, buffer_percent)
        if estimate.paymaster_post_op_gas_limit is not None:
            pm_pogl = add_buffer(estimate.paymaster_post_op_gas_limit, buffer_percent)
        changes['paymaster_and_data'] = pack_paymaster_and_data(pm.paymaster, pm_vgl, pm_pogl, pm.data)

    return op.replace_fields(**changes)

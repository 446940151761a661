# Submitting a signed UserOperation and waiting for it to settle
import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from web3 import Web3

from aa_relay.entrypoint import USER_OPERATION_EVENT_TOPIC, detect_entry_point_version
from aa_relay.errors import MalformedReceiptError
from aa_relay.relay import relay_error_message
from aa_relay.userop import to_wire

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 25


class SettlementStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


@dataclass(frozen=True)
class SubmitResult:
    accepted: bool
    task_id: Optional[str] = None
    error: Optional[str] = None
    # False when the relay could not be reached at all
    responded: bool = True


@dataclass(frozen=True)
class SettlementReceipt:
    status: SettlementStatus
    task_id: Optional[str] = None
    transaction_hash: Optional[str] = None
    user_op_hash: Optional[str] = None
    actual_gas_used: Optional[int] = None
    gas_used: Optional[int] = None
    error: Any = None
    # True when a transaction landed but no UserOperationEvent from the EntryPoint was found
    user_op_hash_missing: bool = False
    # Set when polling stopped early: "timeout" or "cancelled"
    stopped: Optional[str] = None

    @property
    def success(self):
        return self.status == SettlementStatus.SUCCESS

    def transaction_link(self, chain):
        if not self.transaction_hash:
            return None
        return f"https://{chain}.etherscan.io/tx/{self.transaction_hash}"

    def user_op_link(self, chain):
        if not self.user_op_hash:
            return None
        return f"https://jiffyscan.xyz/userOpHash/{self.user_op_hash}?network={chain}"


def find_user_op_hash(logs, entry_point):
    """userOpHash from the EntryPoint's UserOperationEvent, or None if there isn't one"""
    for log in logs:
        if not isinstance(log, dict):
            continue
        topics = log.get('topics') or []
        if str(log.get('address', '')).lower() != entry_point.lower():
            continue
        if len(topics) > 1 and str(topics[0]).lower() == USER_OPERATION_EVENT_TOPIC:
            return topics[1]
    return None


def _hex_to_int(value):
    if value is None:
        return None
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if not isinstance(value, str):
        raise ValueError(f"not a hex quantity: {value!r}")
    return Web3.to_int(hexstr=value)


def parse_receipt(result, entry_point, task_id=None):
    """Turns an eth_getUserOperationReceipt result into a SettlementReceipt"""
    if result is None:
        return SettlementReceipt(status=SettlementStatus.PENDING, task_id=task_id)
    if not isinstance(result, dict):
        raise MalformedReceiptError(f"receipt is not an object: {result!r}", result)

    tx_receipt = result.get('receipt')
    if tx_receipt is not None and not isinstance(tx_receipt, dict):
        raise MalformedReceiptError("'receipt' is not an object", result)
    tx_hash = tx_receipt.get('transactionHash') if tx_receipt else None
    if not tx_hash:
        return SettlementReceipt(status=SettlementStatus.FAILED, task_id=task_id, error=result.get('error'))

    logs = result.get('logs', [])
    if not isinstance(logs, list):
        raise MalformedReceiptError("'logs' is not a list", result)

    try:
        actual_gas_used = _hex_to_int(result.get('actualGasUsed'))
        gas_used = _hex_to_int(tx_receipt.get('gasUsed'))
    except (TypeError, ValueError) as e:
        raise MalformedReceiptError(f"bad gas value in receipt: {e}", result) from e

    user_op_hash = find_user_op_hash(logs, entry_point)
    if user_op_hash is None:
        logger.warning("No UserOperationEvent from %s in receipt for %s", entry_point, tx_hash)

    status = SettlementStatus.SUCCESS
    error = None
    if result.get('success') is False:
        status = SettlementStatus.FAILED
        error = result.get('reason') or "UserOperation reverted"

    return SettlementReceipt(
        status=status,
        task_id=task_id,
        transaction_hash=tx_hash,
        user_op_hash=user_op_hash,
        actual_gas_used=actual_gas_used,
        gas_used=gas_used,
        error=error,
        user_op_hash_missing=user_op_hash is None,
    )


class SettlementTracker:
    """Sends a signed operation to the relay and polls for its receipt.

    Polling has no limit unless max_attempts or max_wait_seconds is given.
    The cancel event is checked before every wait and every request.
    """

    def __init__(self, relay, poll_interval=DEFAULT_POLL_INTERVAL, max_attempts=None, max_wait_seconds=None,
                 cancel_event=None, clock=time.monotonic):
        self.relay = relay
        self.poll_interval = poll_interval
        self.max_attempts = max_attempts
        self.max_wait_seconds = max_wait_seconds
        self.cancel_event = cancel_event or threading.Event()
        self.clock = clock

    def submit(self, entry_point, op, version=None):
        if op.is_draft:
            raise ValueError("UserOperation must be signed before it is submitted")
        version = version or detect_entry_point_version(entry_point)

        payload = self.relay.call("eth_sendUserOperation", [to_wire(op, version).to_rpc(), entry_point])
        if payload is None:
            return SubmitResult(accepted=False, error="no response from relay", responded=False)
        if payload.get('result'):
            task_id = payload['result']
            logger.info("UserOperation submitted, relay task id %s", task_id)
            logger.info("Task link: %s", self.relay.task_status_url(task_id))
            return SubmitResult(accepted=True, task_id=task_id)

        message = relay_error_message(payload) or f"unexpected relay response: {payload}"
        logger.error("*** eth_sendUserOperation failed: %s", message)
        return SubmitResult(accepted=False, error=message)

    def poll_once(self, task_id):
        payload = self.relay.call("eth_getUserOperationReceipt", [task_id])
        if payload is None:
            return None
        return payload.get('result')

    def wait_for_receipt(self, task_id, entry_point):
        """Waits, then polls, until the relay returns a receipt or polling is stopped"""
        start = self.clock()
        attempts = 0
        while True:
            if self.cancel_event.is_set():
                return SettlementReceipt(status=SettlementStatus.PENDING, task_id=task_id, stopped="cancelled")
            if self.max_attempts is not None and attempts >= self.max_attempts:
                return SettlementReceipt(status=SettlementStatus.PENDING, task_id=task_id, stopped="timeout")
            if self.max_wait_seconds is not None and self.clock() - start >= self.max_wait_seconds:
                return SettlementReceipt(status=SettlementStatus.PENDING, task_id=task_id, stopped="timeout")

            logger.info("Waiting for receipt of %s...", task_id)
            if self.cancel_event.wait(self.poll_interval):
                return SettlementReceipt(status=SettlementStatus.PENDING, task_id=task_id, stopped="cancelled")

            attempts += 1
            result = self.poll_once(task_id)
            if result is not None:
                break

        receipt = parse_receipt(result, entry_point, task_id)
        if receipt.transaction_hash:
            logger.info("Operation success=%s txHash=%s userOpHash=%s",
                        receipt.success, receipt.transaction_hash, receipt.user_op_hash)
            logger.info("Gas used (account or paymaster): %s, gas used (transaction): %s",
                        receipt.actual_gas_used, receipt.gas_used)
        else:
            logger.error("*** Operation failed: %s", receipt.error)
        return receipt

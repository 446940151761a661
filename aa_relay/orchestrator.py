# Drives one UserOperation from draft to a settled (or failed) outcome
import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional

import requests
from web3.exceptions import Web3Exception

from aa_relay.entrypoint import detect_entry_point_version
from aa_relay.errors import ConfigurationError, MalformedReceiptError
from aa_relay.gas import GasEstimator, apply_gas_estimate
from aa_relay.relay import RelayClient
from aa_relay.signer import sign_user_operation
from aa_relay.tracker import SettlementTracker
from aa_relay.userop import UserOperation, as_bytes

logger = logging.getLogger(__name__)


class OperationState(str, Enum):
    VALIDATING = "validating"
    ESTIMATING = "estimating"
    SIGNING_DRAFT = "signing_draft"
    ESTIMATED = "estimated"
    SIGNING_FINAL = "signing_final"
    SUBMITTING = "submitting"
    POLLING = "polling"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class ErrorKind(str, Enum):
    CONFIGURATION = "configuration"
    ESTIMATION_FAILED = "estimation_failed"
    SUBMISSION_REJECTED = "submission_rejected"
    TRANSPORT = "transport"
    MALFORMED_RECEIPT = "malformed_receipt"
    EXECUTION_FAILED = "execution_failed"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


@dataclass
class OperationResult:
    success: bool
    state: OperationState
    error_kind: Optional[ErrorKind] = None
    message: Any = None
    task_id: Optional[str] = None
    receipt: Any = None
    operation: Optional[UserOperation] = None
    history: List[OperationState] = field(default_factory=list)


class UserOperationOrchestrator:
    """Builds, estimates, signs, submits and tracks a single UserOperation.

    States move strictly forward:
    validating -> estimating -> signing_draft -> estimated -> signing_final
    -> submitting -> polling -> succeeded | failed.
    estimating covers building the draft from the account; signing_draft
    covers signing it and the eth_estimateUserOperationGas round trip;
    estimated is entered once gas values are in hand.
    Any error goes straight to failed. An instance runs once; retrying needs a
    new instance (and a new nonce).
    """

    def __init__(self, config, account, relay=None, cancel_event=None, max_fee_per_gas=0,
                 max_priority_fee_per_gas=0, paymaster_and_data=b"", check_supported_entry_points=True):
        self.config = config
        self.account = account
        self.relay = relay
        self.cancel_event = cancel_event or threading.Event()
        self.max_fee_per_gas = max_fee_per_gas
        self.max_priority_fee_per_gas = max_priority_fee_per_gas
        self.paymaster_and_data = as_bytes(paymaster_and_data)
        self.check_supported_entry_points = check_supported_entry_points
        self.state = None
        self.history = []
        self.version = None
        self.operation = None
        self._started = False

    def _enter(self, state):
        logger.debug("%s -> %s", self.state.value if self.state else None, state.value)
        self.state = state
        self.history.append(state)

    def _fail(self, kind, message, task_id=None, receipt=None):
        logger.error("*** UserOperation failed (%s): %s", kind.value, message)
        self._enter(OperationState.FAILED)
        return OperationResult(
            success=False,
            state=self.state,
            error_kind=kind,
            message=message,
            task_id=task_id,
            receipt=receipt,
            operation=self.operation,
            history=list(self.history),
        )

    def _sign(self, op):
        signature = sign_user_operation(
            op,
            self.config.signer_keys,
            self.config.chain_id,
            self.config.entry_point,
            self.config.safe_4337_module,
        )
        return op.with_signature(signature)

    def build_draft(self, call_data):
        """Draft operation with zeroed gas values and no signature"""
        entry_point = self.config.entry_point
        deployed = self.account.is_deployed()
        if deployed:
            logger.info("The Safe is already deployed.")
        else:
            logger.info("Deploying a new Safe and executing calldata passed with it.")
        return UserOperation(
            sender=self.account.get_address(),
            nonce=self.account.get_nonce(entry_point),
            init_code=b"" if deployed else self.account.get_init_code(),
            call_data=as_bytes(call_data),
            max_fee_per_gas=self.max_fee_per_gas,
            max_priority_fee_per_gas=self.max_priority_fee_per_gas,
            paymaster_and_data=self.paymaster_and_data,
        )

    def run(self, call_data):
        """Runs the whole flow. ConfigurationError is raised; everything else is reported in the result."""
        if self._started:
            raise RuntimeError("orchestrator has already run; create a new one for another operation")
        self._started = True

        self._enter(OperationState.VALIDATING)
        try:
            self.config.validate()
        except ConfigurationError:
            self._enter(OperationState.FAILED)
            raise
        entry_point = self.config.entry_point
        self.version = detect_entry_point_version(entry_point)
        logger.info("Using EntryPoint %s (%s)", entry_point, self.version.value)

        if self.relay is None:
            self.relay = RelayClient(self.config.relay_url, self.config.chain_id, self.config.api_key,
                                     timeout=self.config.request_timeout)
        if self.cancel_event.is_set():
            return self._fail(ErrorKind.CANCELLED, "cancelled before estimation")
        if self.check_supported_entry_points:
            supported = self.relay.supported_entry_points()
            if supported and entry_point.lower() not in [a.lower() for a in supported]:
                logger.warning("EntryPoint %s not in relay's supported list %s", entry_point, supported)

        self._enter(OperationState.ESTIMATING)
        try:
            self.operation = self.build_draft(call_data)
        except (requests.RequestException, Web3Exception, ValueError) as e:
            return self._fail(ErrorKind.TRANSPORT, f"could not read account state: {e}")
        logger.info("Sender %s nonce %d", self.operation.sender, self.operation.nonce)

        self._enter(OperationState.SIGNING_DRAFT)
        self.operation = self._sign(self.operation)

        if self.cancel_event.is_set():
            return self._fail(ErrorKind.CANCELLED, "cancelled before estimation")
        estimate = GasEstimator(self.relay).estimate(entry_point, self.operation, self.version)
        if estimate is None:
            return self._fail(ErrorKind.ESTIMATION_FAILED, "relay returned no gas estimate")

        self._enter(OperationState.ESTIMATED)
        self.operation = apply_gas_estimate(self.operation, estimate)
        logger.info("Final gas values: preVerificationGas=%d callGasLimit=%d verificationGasLimit=%d",
                    self.operation.pre_verification_gas, self.operation.call_gas_limit,
                    self.operation.verification_gas_limit)

        self._enter(OperationState.SIGNING_FINAL)
        self.operation = self._sign(self.operation)

        self._enter(OperationState.SUBMITTING)
        tracker = SettlementTracker(
            self.relay,
            poll_interval=self.config.poll_interval,
            max_attempts=self.config.max_poll_attempts,
            max_wait_seconds=self.config.max_wait_seconds,
            cancel_event=self.cancel_event,
        )
        if self.cancel_event.is_set():
            return self._fail(ErrorKind.CANCELLED, "cancelled before submission")
        submitted = tracker.submit(entry_point, self.operation, self.version)
        if not submitted.accepted:
            kind = ErrorKind.SUBMISSION_REJECTED if submitted.responded else ErrorKind.TRANSPORT
            return self._fail(kind, submitted.error)

        self._enter(OperationState.POLLING)
        try:
            receipt = tracker.wait_for_receipt(submitted.task_id, entry_point)
        except MalformedReceiptError as e:
            return self._fail(ErrorKind.MALFORMED_RECEIPT, str(e), task_id=submitted.task_id, receipt=e.receipt)

        if receipt.stopped == "cancelled":
            return self._fail(ErrorKind.CANCELLED, "cancelled while waiting for receipt",
                              task_id=submitted.task_id, receipt=receipt)
        if receipt.stopped == "timeout":
            return self._fail(ErrorKind.TIMEOUT, "no receipt before the polling limit",
                              task_id=submitted.task_id, receipt=receipt)
        if not receipt.success:
            return self._fail(ErrorKind.EXECUTION_FAILED, receipt.error, task_id=submitted.task_id, receipt=receipt)

        chain = self.config.chain
        if receipt.user_op_hash:
            logger.info("UserOp link: %s", receipt.user_op_link(chain))
        logger.info("Transaction link: %s", receipt.transaction_link(chain))

        self._enter(OperationState.SUCCEEDED)
        return OperationResult(
            success=True,
            state=self.state,
            task_id=submitted.task_id,
            receipt=receipt,
            operation=self.operation,
            history=list(self.history),
        )

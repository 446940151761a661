# Helpers for sending ERC-4337 UserOperations from a Safe account through a sponsoring relay
from aa_relay.account import AccountFactory, NodeAccount, StaticAccount, encode_execute_user_op
from aa_relay.config import RelayConfig
from aa_relay.entrypoint import ENTRY_POINT_V06, ENTRY_POINT_V07, EntryPointVersion, detect_entry_point_version
from aa_relay.errors import AARelayError, ConfigurationError, MalformedReceiptError
from aa_relay.gas import GasEstimate, GasEstimator, apply_gas_estimate
from aa_relay.orchestrator import ErrorKind, OperationResult, OperationState, UserOperationOrchestrator
from aa_relay.relay import RelayClient
from aa_relay.signer import SignatureEntry, combine_signatures, sign_user_operation
from aa_relay.tracker import SettlementReceipt, SettlementStatus, SettlementTracker, parse_receipt
from aa_relay.userop import (UserOperation, V06Operation, V07Operation, from_wire, parse_init_code,
                             parse_paymaster_and_data, to_wire)

import threading

import eth_account
import pytest
import requests
from eth_account.messages import encode_typed_data
from web3 import Web3

from aa_relay.account import StaticAccount
from aa_relay.entrypoint import ENTRY_POINT_V06, ENTRY_POINT_V07, USER_OPERATION_EVENT_TOPIC
from aa_relay.errors import ConfigurationError
from aa_relay.orchestrator import ErrorKind, OperationState, UserOperationOrchestrator
from aa_relay.signer import safe_op_typed_data

from conftest import FACTORY_ADDR, MODULE_ADDR, OWNER_KEY_1, SAFE_ADDR, make_config

TX_HASH = "0x" + "ab" * 32
USER_OP_HASH = "0x" + "cd" * 32
CALL_DATA = "0x7bb37428" + "00" * 32


def receipt_result(entry_point):
    return {
        'actualGasUsed': "0x1d4c0",
        'success': True,
        'logs': [
            {'address': entry_point, 'topics': [USER_OPERATION_EVENT_TOPIC, USER_OP_HASH]},
            {'address': "0x" + "99" * 20, 'topics': ["0x" + "11" * 32]},
        ],
        'receipt': {'transactionHash': TX_HASH, 'gasUsed': "0x30d40"},
    }


def happy_replies(entry_point):
    return {
        'eth_supportedEntryPoints': [{'result': [ENTRY_POINT_V06, ENTRY_POINT_V07]}],
        'eth_estimateUserOperationGas': [{'result': {
            'preVerificationGas': "0x0", 'callGasLimit': "0x55730", 'verificationGasLimit': "0x76c0"}}],
        'eth_sendUserOperation': [{'result': "task-42"}],
        'eth_getUserOperationReceipt': [{'result': None}, {'result': receipt_result(entry_point)}],
    }


def deployed_account():
    return StaticAccount(address=SAFE_ADDR, nonce=4)


def test_happy_path_v06(relay, session):
    session.replies.update(happy_replies(ENTRY_POINT_V06))
    orchestrator = UserOperationOrchestrator(make_config(ENTRY_POINT_V06), deployed_account(), relay=relay)
    result = orchestrator.run(CALL_DATA)

    assert result.success
    assert result.error_kind is None
    assert result.task_id == "task-42"
    assert result.receipt.transaction_hash == TX_HASH
    assert result.receipt.user_op_hash == USER_OP_HASH
    assert result.receipt.actual_gas_used == 120000
    assert result.receipt.gas_used == 200000
    assert result.history == [
        OperationState.VALIDATING,
        OperationState.ESTIMATING,
        OperationState.SIGNING_DRAFT,
        OperationState.ESTIMATED,
        OperationState.SIGNING_FINAL,
        OperationState.SUBMITTING,
        OperationState.POLLING,
        OperationState.SUCCEEDED,
    ]

    op = result.operation
    assert op.nonce == 4
    assert op.init_code == b""
    assert op.call_gas_limit == 385000
    assert op.verification_gas_limit == 33440
    # zero preVerificationGas from the relay keeps the draft value
    assert op.pre_verification_gas == 0
    assert len(session.calls_for('eth_getUserOperationReceipt')) == 2


def test_submitted_operation_is_signed_over_final_values(relay, session):
    session.replies.update(happy_replies(ENTRY_POINT_V06))
    config = make_config(ENTRY_POINT_V06)
    result = UserOperationOrchestrator(config, deployed_account(), relay=relay).run(CALL_DATA)

    sent = session.calls_for('eth_sendUserOperation')[0]['params'][0]
    assert sent['callGasLimit'] == "0x5dfe8"
    assert sent['verificationGasLimit'] == "0x82a0"

    op = result.operation
    signature = Web3.to_bytes(hexstr=sent['signature'])
    assert signature[:12] == b"\x00" * 12
    signable = encode_typed_data(full_message=safe_op_typed_data(op, config.chain_id, ENTRY_POINT_V06, MODULE_ADDR))
    owner = eth_account.Account.from_key(OWNER_KEY_1).address
    assert eth_account.Account.recover_message(signable, signature=signature[12:]) == owner

    # the estimate request carried the draft signature, which differs from the final one
    estimated = session.calls_for('eth_estimateUserOperationGas')[0]['params'][0]
    assert estimated['signature'] != sent['signature']


def test_undeployed_account_sends_init_code(relay, session):
    session.replies.update(happy_replies(ENTRY_POINT_V07))
    init_code = Web3.to_bytes(hexstr=FACTORY_ADDR) + b"\x01\x02\x03"
    account = StaticAccount(address=SAFE_ADDR, nonce=0, init_code=init_code, deployed=False)
    result = UserOperationOrchestrator(make_config(ENTRY_POINT_V07), account, relay=relay).run(CALL_DATA)

    assert result.success
    sent = session.calls_for('eth_sendUserOperation')[0]['params'][0]
    assert sent['factory'] == Web3.to_checksum_address(FACTORY_ADDR)
    assert sent['factoryData'] == "0x010203"


def test_v06_estimation_failure_aborts(relay, session):
    session.replies.update(happy_replies(ENTRY_POINT_V06))
    session.replies['eth_estimateUserOperationGas'] = [{'error': {'code': -32500, 'message': "AA20"}}]
    result = UserOperationOrchestrator(make_config(ENTRY_POINT_V06), deployed_account(), relay=relay).run(CALL_DATA)

    assert not result.success
    assert result.state == OperationState.FAILED
    assert result.error_kind == ErrorKind.ESTIMATION_FAILED
    assert session.calls_for('eth_sendUserOperation') == []


def test_v07_estimation_failure_uses_fallback(relay, session):
    session.replies.update(happy_replies(ENTRY_POINT_V07))
    session.replies['eth_estimateUserOperationGas'] = [requests.ConnectionError("down")]
    result = UserOperationOrchestrator(make_config(ENTRY_POINT_V07), deployed_account(), relay=relay).run(CALL_DATA)

    assert result.success
    sent = session.calls_for('eth_sendUserOperation')[0]['params'][0]
    assert sent['preVerificationGas'] == "0xc350"
    assert sent['callGasLimit'] == Web3.to_hex(350000 * 110 // 100)
    assert sent['verificationGasLimit'] == Web3.to_hex(30400 * 110 // 100)


def test_submission_rejected_no_polling(relay, session):
    session.replies.update(happy_replies(ENTRY_POINT_V06))
    session.replies['eth_sendUserOperation'] = [{'error': "insufficient funds"}]
    result = UserOperationOrchestrator(make_config(ENTRY_POINT_V06), deployed_account(), relay=relay).run(CALL_DATA)

    assert not result.success
    assert result.error_kind == ErrorKind.SUBMISSION_REJECTED
    assert result.message == "insufficient funds"
    assert session.calls_for('eth_getUserOperationReceipt') == []
    assert OperationState.POLLING not in result.history


def test_submission_transport_failure(relay, session):
    session.replies.update(happy_replies(ENTRY_POINT_V06))
    session.replies['eth_sendUserOperation'] = [requests.ConnectionError("down")]
    result = UserOperationOrchestrator(make_config(ENTRY_POINT_V06), deployed_account(), relay=relay).run(CALL_DATA)
    assert result.error_kind == ErrorKind.TRANSPORT


def test_malformed_receipt(relay, session):
    session.replies.update(happy_replies(ENTRY_POINT_V06))
    session.replies['eth_getUserOperationReceipt'] = [{'result': {
        'receipt': {'transactionHash': TX_HASH}, 'logs': "oops"}}]
    result = UserOperationOrchestrator(make_config(ENTRY_POINT_V06), deployed_account(), relay=relay).run(CALL_DATA)
    assert result.error_kind == ErrorKind.MALFORMED_RECEIPT
    assert result.task_id == "task-42"


def test_receipt_without_transaction_hash(relay, session):
    session.replies.update(happy_replies(ENTRY_POINT_V06))
    session.replies['eth_getUserOperationReceipt'] = [{'result': {'receipt': {}, 'error': "dropped"}}]
    result = UserOperationOrchestrator(make_config(ENTRY_POINT_V06), deployed_account(), relay=relay).run(CALL_DATA)
    assert result.error_kind == ErrorKind.EXECUTION_FAILED
    assert result.message == "dropped"


def test_polling_limit(relay, session):
    session.replies.update(happy_replies(ENTRY_POINT_V06))
    session.replies['eth_getUserOperationReceipt'] = [{'result': None}]
    config = make_config(ENTRY_POINT_V06, max_poll_attempts=2)
    result = UserOperationOrchestrator(config, deployed_account(), relay=relay).run(CALL_DATA)
    assert result.error_kind == ErrorKind.TIMEOUT
    assert len(session.calls_for('eth_getUserOperationReceipt')) == 2


def test_cancelled_before_start(relay, session):
    session.replies.update(happy_replies(ENTRY_POINT_V06))
    cancel = threading.Event()
    cancel.set()
    orchestrator = UserOperationOrchestrator(make_config(ENTRY_POINT_V06), deployed_account(), relay=relay,
                                             cancel_event=cancel)
    result = orchestrator.run(CALL_DATA)
    assert result.error_kind == ErrorKind.CANCELLED
    assert session.calls == []


def test_configuration_error_before_network(relay, session):
    orchestrator = UserOperationOrchestrator(make_config(api_key=""), deployed_account(), relay=relay)
    with pytest.raises(ConfigurationError):
        orchestrator.run(CALL_DATA)
    assert session.calls == []
    assert orchestrator.state == OperationState.FAILED


def test_single_use(relay, session):
    session.replies.update(happy_replies(ENTRY_POINT_V06))
    orchestrator = UserOperationOrchestrator(make_config(ENTRY_POINT_V06), deployed_account(), relay=relay)
    orchestrator.run(CALL_DATA)
    with pytest.raises(RuntimeError):
        orchestrator.run(CALL_DATA)


def test_unsupported_entry_point_only_warns(relay, session, caplog):
    session.replies.update(happy_replies(ENTRY_POINT_V06))
    session.replies['eth_supportedEntryPoints'] = [{'result': [ENTRY_POINT_V07]}]
    result = UserOperationOrchestrator(make_config(ENTRY_POINT_V06), deployed_account(), relay=relay).run(CALL_DATA)
    assert result.success
    assert "not in relay's supported list" in caplog.text


class UnreachableNodeAccount(StaticAccount):
    def get_nonce(self, entry_point):
        raise requests.ConnectionError("node down")


def test_account_read_failure_is_reported(relay, session):
    session.replies.update(happy_replies(ENTRY_POINT_V06))
    account = UnreachableNodeAccount(address=SAFE_ADDR, nonce=0)
    result = UserOperationOrchestrator(make_config(ENTRY_POINT_V06), account, relay=relay).run(CALL_DATA)

    assert not result.success
    assert result.error_kind == ErrorKind.TRANSPORT
    assert "node down" in result.message
    assert result.history[-2:] == [OperationState.ESTIMATING, OperationState.FAILED]
    assert session.calls_for('eth_estimateUserOperationGas') == []


def test_estimation_round_trip_happens_while_signing_draft(relay, session):
    session.replies.update(happy_replies(ENTRY_POINT_V06))
    session.replies['eth_estimateUserOperationGas'] = [{'error': "AA20"}]
    result = UserOperationOrchestrator(make_config(ENTRY_POINT_V06), deployed_account(), relay=relay).run(CALL_DATA)
    assert result.history == [
        OperationState.VALIDATING,
        OperationState.ESTIMATING,
        OperationState.SIGNING_DRAFT,
        OperationState.FAILED,
    ]

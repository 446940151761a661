#!/usr/bin/python
# Command line client: send one UserOperation through the relay
import argparse
import logging
import sys

from web3 import Web3

from aa_relay.account import NodeAccount, StaticAccount, encode_execute_user_op
from aa_relay.config import RelayConfig
from aa_relay.errors import ConfigurationError
from aa_relay.orchestrator import UserOperationOrchestrator

logger = logging.getLogger("aa_relay")


def build_parser():
    parser = argparse.ArgumentParser(description="Send a sponsored UserOperation through a relay")
    parser.add_argument("-v", "--verbose", action="store_true", help="Print additional details")
    parser.add_argument("--account", required=True, help="Safe account address (may be counterfactual)")
    parser.add_argument("--initcode", default="0x", help="Hex-encoded initcode, used if the account isn't deployed")
    parser.add_argument("--eth-rpc", help="Node URL used to read the account nonce and deployment state")
    parser.add_argument("--nonce", type=int, help="EntryPoint nonce (instead of reading it from --eth-rpc)")
    parser.add_argument("--target", help="Target contract address; calldata is wrapped in executeUserOp")
    parser.add_argument("--value", type=int, default=0, help="Value of ETH (in wei) to send with call")
    parser.add_argument("--calldata", default="0x", help="Hex-encoded calldata")
    parser.add_argument("--entry-point", help="EntryPoint address (overrides GELATO_ENTRYPOINT_ADDRESS)")
    parser.add_argument("--chain-id", type=int, help="Chain id (overrides GELATO_CHAIN_ID)")
    parser.add_argument("--max-wait", type=float, help="Give up waiting for a receipt after this many seconds")
    return parser


def load_account(args):
    if args.eth_rpc:
        w3 = Web3(Web3.HTTPProvider(args.eth_rpc))
        return NodeAccount(w3, args.account, init_code=args.initcode)
    if args.nonce is None:
        raise ConfigurationError("either --eth-rpc or --nonce is required")
    return StaticAccount(address=args.account, nonce=args.nonce, init_code=args.initcode,
                         deployed=args.initcode in ("", "0x"))


def main(argv=None):
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    try:
        config = RelayConfig.from_env()
        if args.entry_point:
            config.entry_point = args.entry_point
        if args.chain_id:
            config.chain_id = args.chain_id
        if args.max_wait:
            config.max_wait_seconds = args.max_wait
        config.validate()
        account = load_account(args)
    except ConfigurationError as e:
        logger.error("*** %s", e)
        return 2

    if args.target:
        call_data = encode_execute_user_op(args.target, args.value, args.calldata)
    else:
        call_data = args.calldata

    try:
        result = UserOperationOrchestrator(config, account).run(call_data)
    except ConfigurationError as e:
        logger.error("*** %s", e)
        return 2

    if not result.success:
        print(f"UserOperation failed ({result.error_kind.value}): {result.message}")
        return 1
    receipt = result.receipt
    print(f"Relay task: {result.task_id}")
    print(f"Transaction: {receipt.transaction_link(config.chain)}")
    if receipt.user_op_hash:
        print(f"UserOp: {receipt.user_op_link(config.chain)}")
    print(f"Gas used (account or paymaster): {receipt.actual_gas_used}")
    print(f"Gas used (transaction): {receipt.gas_used}")
    return 0


if __name__ == "__main__":
    sys.exit(main())

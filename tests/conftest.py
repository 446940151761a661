import pytest
import requests

from aa_relay.config import RelayConfig
from aa_relay.entrypoint import ENTRY_POINT_V06, ENTRY_POINT_V07
from aa_relay.relay import RelayClient

# Well-known local devnet keys. Do not use on public networks.
OWNER_KEY_1 = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
OWNER_KEY_2 = "0x59c6995e998f97a5a0044966f0945389dc9e86dae88c7a8412f4603b6b78690d"

SAFE_ADDR = "0x77fe14a710e33de68855b0ea93ed8128025328a9"
MODULE_ADDR = "0xa581c4a4db7175302464ff3c06380bc3270b4037"
FACTORY_ADDR = "0x4e1dcf7ad4e460cfd30791ccc4f9c8a4f820ec67"
PAYMASTER_ADDR = "0x00000000000000fb866daaa79352cc568a005d96"


class FakeResponse:
    def __init__(self, payload=None, text=None):
        self.payload = payload
        self.text = text if text is not None else repr(payload)

    def json(self):
        if isinstance(self.payload, Exception):
            raise self.payload
        return self.payload


class FakeSession:
    """Stands in for requests.Session. Replies are queued per JSON-RPC method.

    A queued reply can be a dict (returned as the JSON body), an exception
    (raised from post()), or a FakeResponse. The last reply for a method is
    reused once the queue runs dry.
    """

    def __init__(self, replies=None):
        self.replies = {k: list(v) if isinstance(v, list) else [v] for k, v in (replies or {}).items()}
        self.calls = []

    def post(self, url, json=None, headers=None, timeout=None):
        method = json['method']
        self.calls.append((url, json))
        queue = self.replies.get(method)
        if not queue:
            raise requests.ConnectionError(f"no reply queued for {method}")
        reply = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, FakeResponse):
            return reply
        return FakeResponse(reply)

    def calls_for(self, method):
        return [body for _, body in self.calls if body['method'] == method]


@pytest.fixture
def session():
    return FakeSession()


@pytest.fixture
def relay(session):
    return RelayClient("https://relay.example", 11155111, "test-key", session=session)


def make_config(entry_point=ENTRY_POINT_V06, **overrides):
    values = dict(
        api_key="test-key",
        chain_id=11155111,
        entry_point=entry_point,
        safe_4337_module=MODULE_ADDR,
        signer_keys=[OWNER_KEY_1],
        chain="sepolia",
        relay_url="https://relay.example",
        poll_interval=0,
    )
    values.update(overrides)
    return RelayConfig(**values)


@pytest.fixture
def config_v06():
    return make_config(ENTRY_POINT_V06)


@pytest.fixture
def config_v07():
    return make_config(ENTRY_POINT_V07)

# Settings for one relay run, validated once before anything touches the network
import os
import re
from dataclasses import dataclass, field
from typing import List, Optional

from dotenv import find_dotenv, load_dotenv
from web3 import Web3

from aa_relay.errors import ConfigurationError
from aa_relay.relay import DEFAULT_RELAY_URL
from aa_relay.tracker import DEFAULT_POLL_INTERVAL

PRIVATE_KEY_RE = re.compile(r'^(0x)?[0-9a-fA-F]{64}$')


@dataclass
class RelayConfig:
    api_key: str = ""
    chain_id: int = 0
    entry_point: str = ""
    safe_4337_module: str = ""
    signer_keys: List[str] = field(default_factory=list)
    # Network label used in explorer links, e.g. "sepolia"
    chain: str = ""
    relay_url: str = DEFAULT_RELAY_URL
    poll_interval: float = DEFAULT_POLL_INTERVAL
    max_poll_attempts: Optional[int] = None
    max_wait_seconds: Optional[float] = None
    request_timeout: float = 60

    def validate(self):
        """Raises ConfigurationError describing everything that's wrong"""
        problems = []
        missing = [name for name in ('api_key', 'entry_point', 'safe_4337_module', 'chain', 'relay_url')
                   if not getattr(self, name)]
        if not self.signer_keys:
            missing.append('signer_keys')
        if missing:
            problems.append("missing " + ", ".join(missing))

        if not isinstance(self.chain_id, int) or self.chain_id <= 0:
            problems.append(f"chain_id must be a positive integer, got {self.chain_id!r}")
        for name in ('entry_point', 'safe_4337_module'):
            value = getattr(self, name)
            if value and not Web3.is_address(value):
                problems.append(f"{name} is not an address: {value}")
        for n, key in enumerate(self.signer_keys):
            if not PRIVATE_KEY_RE.match(key or ""):
                problems.append(f"signer key #{n} is not a 32 byte hex private key")
        if self.poll_interval < 0:
            problems.append("poll_interval must not be negative")
        if self.max_poll_attempts is not None and self.max_poll_attempts <= 0:
            problems.append("max_poll_attempts must be positive")
        if self.max_wait_seconds is not None and self.max_wait_seconds <= 0:
            problems.append("max_wait_seconds must be positive")

        if problems:
            raise ConfigurationError("Invalid configuration: " + "; ".join(problems))
        return self

    @classmethod
    def from_env(cls, environ=None, load_env_file=True):
        """Builds a config from GELATO_* / PK variables, reading .env if present"""
        if load_env_file:
            load_dotenv(find_dotenv(usecwd=True))
        env = os.environ if environ is None else environ

        def optional_number(name, convert):
            value = env.get(name)
            if value in (None, ""):
                return None
            try:
                return convert(value)
            except ValueError as e:
                raise ConfigurationError(f"{name} is not a number: {value}") from e

        chain_id = optional_number('GELATO_CHAIN_ID', int) or 0
        poll_interval = optional_number('GELATO_POLL_INTERVAL', float)
        return cls(
            api_key=env.get('GELATO_API_KEY', ""),
            chain_id=chain_id,
            entry_point=env.get('GELATO_ENTRYPOINT_ADDRESS', ""),
            safe_4337_module=env.get('SAFE_4337_MODULE_ADDRESS', ""),
            signer_keys=[k.strip() for k in env.get('PK', "").split(',') if k.strip()],
            chain=env.get('GELATO_CHAIN', ""),
            relay_url=env.get('GELATO_API_URL') or DEFAULT_RELAY_URL,
            poll_interval=DEFAULT_POLL_INTERVAL if poll_interval is None else poll_interval,
            max_poll_attempts=optional_number('GELATO_MAX_POLL_ATTEMPTS', int),
            max_wait_seconds=optional_number('GELATO_MAX_WAIT_SECONDS', float),
        )

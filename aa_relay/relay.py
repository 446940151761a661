# JSON-RPC transport to the relay / bundler
import logging

import requests
from jsonrpcclient import request

logger = logging.getLogger(__name__)

DEFAULT_RELAY_URL = "https://api.gelato.digital"


def relay_rpc_url(relay_url, chain_id, api_key):
    """Bundler endpoint for a chain, authenticated with a 1Balance sponsor key"""
    return f"{relay_url.rstrip('/')}/bundlers/{chain_id}/rpc?sponsorApiKey={api_key}"


def relay_error_message(payload):
    """Best-effort diagnostic text from an error-shaped relay response"""
    if not payload:
        return None
    error = payload.get('error')
    if isinstance(error, dict):
        return error.get('message') or str(error)
    if error:
        return str(error)
    if payload.get('message'):
        return str(payload['message'])
    return None


class RelayClient:
    """Talks to one relay endpoint.

    call() never raises for network problems: a failed request or an
    undecodable body is logged and reported as None, and callers decide what
    a missing response means for them.
    """

    def __init__(self, relay_url, chain_id, api_key, timeout=60, session=None):
        self.relay_url = relay_url.rstrip('/')
        self.chain_id = chain_id
        self.rpc_url = relay_rpc_url(relay_url, chain_id, api_key)
        self.timeout = timeout
        self.session = session or requests.Session()

    def call(self, method, params):
        """POST a JSON-RPC request, returning the decoded response object or None"""
        body = request(method, params=params)
        logger.debug("%s request %s", method, body)
        try:
            response = self.session.post(
                self.rpc_url,
                json=body,
                headers={'accept': 'application/json'},
                timeout=self.timeout)
            payload = response.json()
        except requests.RequestException as e:
            logger.error("*** %s failed: %s", method, e)
            return None
        except ValueError:
            logger.error("*** Can't decode %s response as JSON: %s", method, response.text)
            return None
        if not isinstance(payload, dict):
            logger.error("*** Unexpected %s response: %s", method, payload)
            return None
        logger.debug("%s response %s", method, payload)
        return payload

    def supported_entry_points(self):
        """EntryPoints the relay accepts for this chain. Empty if it can't tell us."""
        payload = self.call("eth_supportedEntryPoints", [])
        if not payload or not isinstance(payload.get('result'), list):
            logger.warning("Could not fetch supported EntryPoints: %s", relay_error_message(payload))
            return []
        return payload['result']

    def task_status_url(self, task_id):
        return f"{self.relay_url}/tasks/status/{task_id}"

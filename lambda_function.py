import os
import sys
import json
import time
import hashlib
import logging
from dataclasses import dataclass
from typing import Any, Optional

import requests
from dotenv import load_dotenv


# Lambda runtime installs a handler on the root logger
logger = logging.getLogger()
logger.setLevel(logging.INFO)

# Picks up a local .env when running outside Lambda
load_dotenv()

LOOKUP_PATH = "/ipi/gpu/v1/ipinfo/{ip}"

ERROR_RESPONSE = {
    "statusCode": 400,
    "body": "Please provide a valid ip address.",
}


@dataclass(frozen=True)
class ApiConfig:
    """Geo-IP provider credentials, read once per container."""

    api_host: Optional[str] = None
    api_key: Optional[str] = None
    shared_secret: Optional[str] = None

    @classmethod
    def from_env(cls, environ=None):
        environ = os.environ if environ is None else environ
        return cls(
            api_host=environ.get("API_HOST"),
            api_key=environ.get("API_KEY"),
            shared_secret=environ.get("SHARED_SECRET"),
        )


# API credentials
CONFIG = ApiConfig.from_env()


@dataclass(frozen=True)
class LookupResult:
    ok: bool
    ipinfo: Any = None

    @classmethod
    def success(cls, ipinfo):
        return cls(ok=True, ipinfo=ipinfo)

    @classmethod
    def failure(cls):
        return cls(ok=False)

    def to_response(self):
        if not self.ok:
            return dict(ERROR_RESPONSE)
        return {
            "statusCode": 200,
            "body": json.dumps(self.ipinfo, separators=(",", ":"), ensure_ascii=False),
        }


def has_required_params(*params):
    """True when every param is truthy. No params is vacuously true."""
    return all(params)


def is_valid_ip_address(ip_address):
    """
    Only checks for a non-empty string. The address format itself
    (IPv4 or IPv6) is not inspected.
    """
    return isinstance(ip_address, str) and ip_address != ""


def get_time_in_seconds():
    return int(time.time())


def create_hash_string(api_key, shared_secret, time_in_seconds):
    """
    SHA-256 hex digest of api key + shared secret + unix seconds.

    The provider rebuilds the same string on its side, so the order and the
    lack of a separator must not change. Returns None if any part is missing.
    """
    if not has_required_params(api_key, shared_secret, time_in_seconds):
        return None
    message = f"{api_key}{shared_secret}{time_in_seconds}"
    return hashlib.sha256(message.encode("utf-8")).hexdigest()


def get_digital_signature(config=CONFIG):
    return create_hash_string(config.api_key, config.shared_secret, get_time_in_seconds())


def get_request_url(ip_address, config=CONFIG):
    """Build the signed lookup url, or None if it can't be built."""
    if not is_valid_ip_address(ip_address):
        return None
    if not has_required_params(config.api_host, config.api_key):
        return None

    signature = get_digital_signature(config)
    if not signature:
        return None

    # Values are interpolated as-is, no url encoding
    path = LOOKUP_PATH.format(ip=ip_address)
    return f"https://{config.api_host}{path}?apiKey={config.api_key}&sig={signature}&format=json"


def request_info_from_api(ip_address, config=CONFIG):
    """
    Single GET against the provider. Non-2xx responses raise
    requests.HTTPError, transport problems raise requests.RequestException.
    """
    if not is_valid_ip_address(ip_address):
        return None

    url = get_request_url(ip_address, config)
    if url is None:
        logger.warning("Geo-IP lookup url could not be built, check API_HOST/API_KEY/SHARED_SECRET")
        return None

    response = requests.get(url)
    response.raise_for_status()
    return response


def get_ip_info(ip_address, config=CONFIG):
    if not is_valid_ip_address(ip_address):
        return None
    return request_info_from_api(ip_address, config)


def lookup(ip_address, config=CONFIG):
    """Run the lookup and fold every failure into LookupResult.failure()."""
    try:
        response = get_ip_info(ip_address, config)
    except (requests.exceptions.RequestException, ValueError) as e:
        # http.client.InvalidURL is a ValueError and is not wrapped by requests
        logger.warning("Geo-IP request failed for %s: %s", ip_address, type(e).__name__)
        return LookupResult.failure()

    if response is None:
        return LookupResult.failure()

    try:
        data = response.json()
    except ValueError:
        logger.warning("Geo-IP response for %s was not valid JSON", ip_address)
        return LookupResult.failure()

    # Anything but a JSON object is treated as a failed lookup, not a 200
    if not isinstance(data, dict):
        logger.warning("Geo-IP response for %s was not a JSON object", ip_address)
        return LookupResult.failure()

    return LookupResult.success(data.get("ipinfo"))


def lambda_handler(event, context, config=None):
    config = CONFIG if config is None else config

    # API Gateway sends null when there is no query string
    params = event.get("queryStringParameters") or {}
    ip_address = params.get("ip")

    if not ip_address:
        return LookupResult.failure().to_response()

    logger.info("Looking up geo info for IP: %s", ip_address)
    return lookup(ip_address, config).to_response()


if __name__ == "__main__":
    test_event = {
        "queryStringParameters": {
            "ip": sys.argv[1] if len(sys.argv) > 1 else "8.8.8.8",
        },
    }
    result = lambda_handler(test_event, None)
    print(json.dumps(result, indent=2))

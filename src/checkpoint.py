"""Latest released version lookup through the HashiCorp checkpoint service"""

import logging
from typing import Optional

import httpx

from .errors import VersionLookupError

logger = logging.getLogger(__name__)

CHECKPOINT_URL = "https://checkpoint-api.hashicorp.com/v1/check/{product}"


def latest_version(product: str = "consul", client: Optional[httpx.Client] = None,
                   timeout: float = 10.0) -> str:
    """
    Ask the checkpoint service for the current version of a product

    Args:
        product: HashiCorp product name
        client: Optional preconfigured httpx client
        timeout: Request timeout in seconds

    Returns:
        Version string without a leading "v", e.g. "1.9.1"

    Raises:
        VersionLookupError: Request failed or the answer carried no version
    """
    url = CHECKPOINT_URL.format(product=product)
    params = {"version": "0.0.0", "arch": "amd64", "os": "linux"}
    owns_client = client is None
    http = client or httpx.Client(timeout=timeout)

    try:
        response = http.get(url, params=params)
        response.raise_for_status()
        data = response.json()
    except (httpx.HTTPError, ValueError) as e:
        raise VersionLookupError(
            "unable to get latest version number, define a version manually with the --version flag"
        ) from e
    finally:
        if owns_client:
            http.close()

    version = str(data.get("current_version") or "").lstrip("v") if isinstance(data, dict) else ""
    if not version:
        raise VersionLookupError(f"checkpoint response for {product} has no current_version")

    logger.info(f"Latest {product} version is {version}")
    return version

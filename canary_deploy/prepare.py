"""
Environment preparation before a deployment: make sure the registry is
reachable, then pull every image the deployment will need. Stops at the
first failure.
"""

import logging
from typing import Iterable, Optional

import requests

from canary_deploy.errors import CommandError, PreparationError
from canary_deploy.runtime import RuntimeAdapter

logger = logging.getLogger(__name__)


def check_connectivity(urls: Iterable[str], session: Optional[requests.Session] = None,
                       timeout: float = 10.0) -> None:
    session = session or requests.Session()
    for url in urls:
        logger.info(f"Pinging {url}...")
        try:
            response = session.head(url, timeout=timeout, allow_redirects=True)
        except requests.RequestException as e:
            raise PreparationError(
                f"Could not connect to {url} ({type(e).__name__}). "
                f"Please check your network settings, DNS, or firewall rules."
            )
        if response.status_code >= 400:
            raise PreparationError(f"Could not connect to {url}: HTTP {response.status_code}")
        logger.info(f"Connection to {url} is successful.")


def pull_images(runtime: RuntimeAdapter, images: Iterable[str]) -> None:
    for image in images:
        logger.info(f"Pulling image: {image}...")
        try:
            runtime.pull_image(image)
        except CommandError as e:
            raise PreparationError(f"Failed to pull {image}: {e}")
        logger.info(f"Successfully pulled {image}.")


def prepare(runtime: RuntimeAdapter, images: list, urls: Iterable[str],
            session: Optional[requests.Session] = None) -> None:
    if not images:
        raise PreparationError("No Docker images specified.")

    logger.info("--- [Step 1/2] Checking network connectivity to required services ---")
    check_connectivity(urls, session=session)
    logger.info("Network connectivity check passed.")

    logger.info("--- [Step 2/2] Pulling specified Docker images ---")
    pull_images(runtime, images)
    logger.info("Preparation complete! All images were pulled successfully.")

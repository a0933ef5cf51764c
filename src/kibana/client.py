"""HTTP client for the Kibana Fleet package API.

Installs packages through the Fleet EPM endpoints:
- POST /api/fleet/epm/packages                     upload a package zip
- POST /api/fleet/epm/packages/{name}/{version}    install a published package
- GET  /api/status                                 stack version (zip upload gate)

Install calls are all-or-nothing on the Kibana side and are never retried
here. Only idempotent GETs retry, through the session's urllib3 Retry policy.
"""

import io
import logging
import threading
import time
from pathlib import Path
from typing import Any, Optional, Union

import requests
import urllib3
from packaging.version import Version
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from conditions import parse_version
from config import GatewayConfig
from errors import (
    AuthenticationError,
    Cancelled,
    DeadlineExceeded,
    RemoteRejected,
    TransportError,
)
from manifest import Manifest, load_manifest, read_archive_manifest
from source import DirectorySource

logger = logging.getLogger(__name__)

FLEET_PACKAGES_API = '/api/fleet/epm/packages'
STATUS_API = '/api/status'

# Kibana accepts package zip uploads from this version on
MIN_ZIP_INSTALL_VERSION = Version('8.7.0')

GET_RETRIES = 3
GET_BACKOFF_FACTOR = 0.5
CANCEL_POLL_INTERVAL = 0.2  # seconds


class KibanaClient:
    """Fleet API client.

    Holds only read-only configuration. Each request runs on its own
    session, so concurrent installs through one client share no state.
    """

    def __init__(self, config: GatewayConfig):
        """Initialize Kibana client.

        Args:
            config: Gateway configuration (host, credentials, TLS, timeout)
        """
        self.config = config
        self.host = config.kibana_host.rstrip('/')

        if config.insecure:
            # Suppress SSL warnings for self-signed certs
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

    @property
    def _verify(self) -> Union[bool, str]:
        if self.config.insecure:
            return False
        if self.config.ca_cert:
            return str(self.config.ca_cert)
        return True

    def _new_session(self) -> requests.Session:
        """Build a session with auth headers and the GET retry policy."""
        session = requests.Session()
        retry = Retry(
            total=GET_RETRIES,
            backoff_factor=GET_BACKOFF_FACTOR,
            status_forcelist=(502, 503, 504),
            allowed_methods=frozenset({'GET'}),
            raise_on_status=False,
        )
        adapter = HTTPAdapter(max_retries=retry)
        session.mount('http://', adapter)
        session.mount('https://', adapter)

        session.headers.update({
            'Accept': 'application/json',
            'kbn-xsrf': 'fleetpkg',
        })
        if self.config.api_key:
            session.headers['Authorization'] = f"ApiKey {self.config.api_key}"
        elif self.config.username and self.config.password:
            session.auth = (self.config.username, self.config.password)
        return session

    def _deadline(self, timeout: Optional[float]) -> tuple[float, float]:
        """Return (timeout, absolute monotonic deadline) for one remote step."""
        timeout = timeout if timeout is not None else self.config.timeout
        return timeout, time.monotonic() + timeout

    def _send(
        self,
        method: str,
        path: str,
        timeout: float,
        deadline: float,
        cancel_event: Optional[threading.Event] = None,
        **kwargs: Any,
    ) -> requests.Response:
        """Send a request, honouring the caller's deadline and cancellation.

        The request runs on a daemon thread so an abandoned request never
        holds the process open. The calling thread polls the cancel event and
        the deadline; the socket read timeout is capped at the time left.

        Args:
            timeout: Caller's timeout in seconds (for error messages)
            deadline: Absolute time.monotonic() deadline shared by every
                request of the same remote step

        Raises:
            Cancelled: If cancel_event is set before the response arrives
            DeadlineExceeded: If the deadline passes first
            TransportError: On connection failures
        """
        if cancel_event is not None and cancel_event.is_set():
            raise Cancelled(f"Cancelled before {method} {path}")
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise DeadlineExceeded(timeout)

        url = f"{self.host}{path}"
        session = self._new_session()
        outcome: dict[str, Any] = {}
        done = threading.Event()

        def run() -> None:
            try:
                outcome['response'] = session.request(
                    method, url, timeout=remaining, verify=self._verify, **kwargs
                )
            except Exception as e:
                outcome['error'] = e
            finally:
                done.set()

        logger.debug(f"{method} {url} (timeout {remaining:.1f}s)")
        worker = threading.Thread(target=run, name=f"fleetpkg-{method.lower()}")
        worker.daemon = True

        try:
            worker.start()
            while not done.wait(min(CANCEL_POLL_INTERVAL, max(deadline - time.monotonic(), 0))):
                if cancel_event is not None and cancel_event.is_set():
                    raise Cancelled(f"Cancelled during {method} {path}")
                if time.monotonic() >= deadline:
                    raise DeadlineExceeded(timeout)

            if 'error' in outcome:
                raise outcome['error']
            return outcome['response']

        except requests.exceptions.Timeout:
            raise DeadlineExceeded(timeout)
        except requests.exceptions.ConnectionError as e:
            raise TransportError(f"Cannot connect to {self.host}: {e}")
        except requests.exceptions.RequestException as e:
            raise TransportError(f"Request to {url} failed: {e}")
        finally:
            session.close()

    def _error_message(self, response: requests.Response) -> str:
        """Extract the error message from a Kibana error response."""
        try:
            body = response.json()
        except ValueError:
            return response.text[:200]
        if isinstance(body, dict):
            return str(body.get('message') or body.get('error') or body)
        return str(body)

    def _check_response(self, response: requests.Response) -> Any:
        """Map HTTP status to the error taxonomy and return the JSON body."""
        status = response.status_code

        if status in (401, 403):
            raise AuthenticationError(
                f"Kibana refused the credentials ({status}): {self._error_message(response)}",
                status=status,
            )
        if 400 <= status < 500:
            raise RemoteRejected(
                f"Kibana rejected the request ({status}): {self._error_message(response)}",
                status=status,
            )
        if status >= 500:
            raise TransportError(
                f"Kibana error ({status}): {self._error_message(response)}",
                status=status,
            )

        try:
            return response.json()
        except ValueError as e:
            raise TransportError(f"Invalid JSON response from Kibana: {e}", status=status)

    def get_version(
        self,
        timeout: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Version:
        """Return the Kibana version reported by the status API."""
        timeout, deadline = self._deadline(timeout)
        return self._get_version(timeout, deadline, cancel_event)

    def _get_version(
        self,
        timeout: float,
        deadline: float,
        cancel_event: Optional[threading.Event],
    ) -> Version:
        response = self._send('GET', STATUS_API, timeout, deadline, cancel_event)
        body = self._check_response(response)
        try:
            number = body['version']['number']
        except (KeyError, TypeError):
            raise TransportError("Kibana status response has no version.number")
        try:
            return parse_version(number)
        except ValueError as e:
            raise TransportError(f"Kibana reported an invalid version: {e}")

    def _params(self, skip_validation: bool) -> Optional[dict]:
        # Request hint only; not interpreted locally
        return {'skipValidation': 'true'} if skip_validation else None

    def _log_installed(self, manifest: Manifest, body: Any) -> None:
        items = body.get('items', []) if isinstance(body, dict) else []
        logger.info(f"Installed {manifest.identity} ({len(items)} assets)")

    def install_archive(
        self,
        data: bytes,
        skip_validation: bool = False,
        timeout: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Manifest:
        """Upload and install a package zip.

        Args:
            data: Package zip bytes
            skip_validation: Ask Kibana to skip its own package validation
            timeout: Deadline in seconds for the version check and upload
                together (default: config.timeout)
            cancel_event: Set to abort the in-flight request

        Returns:
            Manifest read from the uploaded archive

        Raises:
            RemoteRejected: If Kibana is older than 8.7.0 or refuses the package
        """
        manifest = read_archive_manifest(io.BytesIO(data))
        timeout, deadline = self._deadline(timeout)

        version = self._get_version(timeout, deadline, cancel_event)
        if version < MIN_ZIP_INSTALL_VERSION:
            raise RemoteRejected(
                f"Kibana {version} cannot install package zips "
                f"(requires >= {MIN_ZIP_INSTALL_VERSION}). "
                f"Install from the package registry with --root instead."
            )

        logger.info(f"Uploading {manifest.identity} ({len(data)} bytes) to {self.host}")
        response = self._send(
            'POST',
            FLEET_PACKAGES_API,
            timeout,
            deadline,
            cancel_event,
            data=data,
            params=self._params(skip_validation),
            headers={'Content-Type': 'application/zip'},
        )
        body = self._check_response(response)
        self._log_installed(manifest, body)
        return manifest

    def install_from_directory(
        self,
        path: Union[str, Path],
        skip_validation: bool = False,
        timeout: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Manifest:
        """Install the published artifact for the package at path.

        The package root identifies the artifact by name and version; Kibana
        fetches it from its package registry. Installing over an existing
        version upgrades or reinstalls it.

        Args:
            path: Package root directory
            skip_validation: Ask Kibana to skip its own package validation
            timeout: Deadline in seconds (default: config.timeout)
            cancel_event: Set to abort the in-flight request

        Returns:
            Manifest of the installed package
        """
        manifest = load_manifest(DirectorySource(Path(path)))
        timeout, deadline = self._deadline(timeout)

        logger.info(f"Installing {manifest.identity} from the package registry via {self.host}")
        response = self._send(
            'POST',
            f"{FLEET_PACKAGES_API}/{manifest.name}/{manifest.version}",
            timeout,
            deadline,
            cancel_event,
            json={'force': True},
            params=self._params(skip_validation),
        )
        body = self._check_response(response)
        self._log_installed(manifest, body)
        return manifest

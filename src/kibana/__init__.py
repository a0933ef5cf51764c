"""Kibana Fleet API client (package installation gateway)."""

from kibana.client import (
    FLEET_PACKAGES_API,
    MIN_ZIP_INSTALL_VERSION,
    KibanaClient,
)

__all__ = [
    "FLEET_PACKAGES_API",
    "MIN_ZIP_INSTALL_VERSION",
    "KibanaClient",
]

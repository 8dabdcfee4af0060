from __future__ import annotations

from .models import ServiceState


class CertCheckError(Exception):
    """Base class for every error raised by this package."""

    state: ServiceState = ServiceState.UNKNOWN


class ConfigurationError(CertCheckError):
    state = ServiceState.UNKNOWN


class InputError(CertCheckError):
    state = ServiceState.CRITICAL


class UnreadableFileError(InputError):
    pass


class NoCertificatesFoundError(InputError):
    pass


class MalformedEncodingError(InputError):
    pass


class ConnectivityError(CertCheckError):
    state = ServiceState.CRITICAL


class NameResolutionError(ConnectivityError):
    pass


class RefusedError(ConnectivityError):
    pass


class ResetByPeerError(ConnectivityError):
    pass


class HandshakeError(ConnectivityError):
    pass


class DialTimeoutError(ConnectivityError):
    pass


class EmptyChainError(ConnectivityError):
    pass


class InternalError(CertCheckError):
    state = ServiceState.UNKNOWN


class UnsupportedPayloadVersionError(InternalError):
    pass

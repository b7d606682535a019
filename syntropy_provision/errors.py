"""
Error taxonomy for the provisioning toolchain.

Every failure the operator can see is a ProvisionError carrying a machine
readable code, the process exit code, the failing subphase (if any), a human
message and a suggestion.
"""

from typing import Dict, List, Optional, Tuple


EXIT_OK = 0
EXIT_UNKNOWN = 1
EXIT_INVALID_INTENT = 2
EXIT_NO_DEVICE = 3
EXIT_DEVICE_REJECTED = 4
EXIT_IMAGE_UNAVAILABLE = 5
EXIT_IDENTITY_FAILURE = 6
EXIT_PLATFORM_FAILURE = 7
EXIT_CANCELED = 130


class ProvisionError(Exception):
    """Base class for all operator-visible failures"""

    code = 'unknown'
    exit_code = EXIT_UNKNOWN
    suggestion = ''

    def __init__(self, message: str, subphase: Optional[str] = None, suggestion: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.subphase = subphase
        if suggestion is not None:
            self.suggestion = suggestion
        self.release_error: Optional['ProvisionError'] = None

    def to_dict(self) -> Dict[str, object]:
        data = {
            'code': self.code,
            'subphase': self.subphase,
            'message': self.message,
            'suggestion': self.suggestion,
        }
        if self.release_error is not None:
            data['release_error'] = self.release_error.to_dict()
        return data

    def __str__(self) -> str:
        if self.subphase:
            return f"[{self.subphase}] {self.message}"
        return self.message


class InvalidIntent(ProvisionError):
    code = 'invalid_intent'
    exit_code = EXIT_INVALID_INTENT
    suggestion = 'Fix the listed fields and run the command again.'

    def __init__(self, violations: List[Tuple[str, str]]):
        self.violations = list(violations)
        details = '; '.join(f"{field}: {reason}" for field, reason in self.violations)
        super().__init__(f"invalid provisioning intent ({details})")


class NoDevice(ProvisionError):
    code = 'no_device'
    exit_code = EXIT_NO_DEVICE
    suggestion = 'Connect a USB device between 1 GiB and 2 TiB and retry, or name the device explicitly.'


class AmbiguousDevice(ProvisionError):
    code = 'ambiguous_device'
    exit_code = EXIT_NO_DEVICE
    suggestion = 'Several candidate devices were found; pass the device path explicitly.'

    def __init__(self, candidates):
        self.candidates = list(candidates)
        listing = ', '.join(device.describe() for device in self.candidates)
        super().__init__(f"{len(self.candidates)} candidate devices found: {listing}")


class DeviceRejected(ProvisionError):
    code = 'device_rejected'
    exit_code = EXIT_DEVICE_REJECTED
    suggestion = 'Choose a removable device that holds no system, boot or home partition.'

    def __init__(self, reason: str, message: str):
        self.reason = reason
        super().__init__(message)

    def to_dict(self) -> Dict[str, object]:
        data = super().to_dict()
        data['reason'] = self.reason
        return data


class ImageUnavailable(ProvisionError):
    code = 'image_unavailable'
    exit_code = EXIT_IMAGE_UNAVAILABLE
    suggestion = 'Check your network connection or pass an Ubuntu Server ISO with --iso.'


class NoCandidateReachable(ImageUnavailable):
    code = 'no_candidate_reachable'


class DownloadTruncated(ImageUnavailable):
    code = 'download_truncated'


class IOFailed(ImageUnavailable):
    code = 'io_failed'


class IdentityFailure(ProvisionError):
    code = 'identity_failure'
    exit_code = EXIT_IDENTITY_FAILURE
    suggestion = 'Inspect ~/.syntropy/keys; use "syntropy keys" to delete or rotate the affected keys.'


class CorruptKey(IdentityFailure):
    code = 'corrupt_key'


class RenderFailure(ProvisionError):
    code = 'render_failure'
    suggestion = 'This is a defect in the seed templates; please report it.'


class PlatformFailure(ProvisionError):
    code = 'platform_failure'
    exit_code = EXIT_PLATFORM_FAILURE
    suggestion = 'Run "syntropy debug" to check required tools and privileges.'

    def __init__(self, subphase: str, message: str, suggestion: Optional[str] = None):
        super().__init__(message, subphase=subphase, suggestion=suggestion)


class Unsupported(PlatformFailure):
    code = 'unsupported'
    suggestion = 'Run the command from WSL or a Linux host instead.'


class OperationTimeout(PlatformFailure):
    code = 'timeout'
    suggestion = 'The device may be slow or faulty; the media is not bootable and must be rewritten.'


class Canceled(ProvisionError):
    code = 'canceled'
    exit_code = EXIT_CANCELED
    suggestion = 'Run the command again when ready.'


class RecordConflict(ProvisionError):
    code = 'record_conflict'
    suggestion = 'A record for this node already exists; pass --overwrite to replace it.'

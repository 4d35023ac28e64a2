"""
Errors raised while acquiring or decoding QR codes.

Every error carries a stable `code`, a message the user can act on and the
next `action` to offer. They map one-to-one onto session notices.
"""

from docverify.models.schemas import Notice


class ScanError(Exception):
    """Base class for acquisition and decode failures."""

    code = "scan_error"
    action = "retry"
    default_message = "Could not read a QR code."

    def __init__(self, message: str = None, detail: str = None):
        self.message = message or self.default_message
        self.detail = detail
        super().__init__(self.message if not detail else f"{self.message} ({detail})")

    def to_notice(self) -> Notice:
        return Notice(code=self.code, message=self.message, action=self.action)


# =============================================================================
# Acquisition errors (live capture)
# =============================================================================

class AcquisitionError(ScanError):
    """The camera could not be started."""

    code = "acquisition_error"
    default_message = "Unable to access camera."


class PermissionDenied(AcquisitionError):
    code = "permission_denied"
    action = "grant_permission"
    default_message = "Camera permission denied. Please allow camera access and try again."


class DeviceNotFound(AcquisitionError):
    code = "device_not_found"
    action = "connect_camera"
    default_message = "No camera found on this device."


class DeviceUnsupported(AcquisitionError):
    code = "device_unsupported"
    action = "use_another_channel"
    default_message = "Camera not supported on this device. Upload a QR image or enter the ID instead."


class DeviceBusy(AcquisitionError):
    code = "device_busy"
    action = "stop_other_scan"
    default_message = "The camera is already in use by another scan. Stop it and try again."


# =============================================================================
# Decode errors (image upload)
# =============================================================================

class DecodeError(ScanError):
    """A still image did not yield a payload."""

    code = "decode_error"
    action = "reselect_image"


class Unreadable(DecodeError):
    code = "unreadable"
    default_message = "Could not read the uploaded image. Please select a PNG, JPEG or WebP file."


class NoCodeFound(DecodeError):
    code = "no_code_found"
    default_message = "Could not read QR code from image. Please try again with a clearer image."

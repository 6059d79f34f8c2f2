"""Error taxonomy shared by every stage of the verification pipeline.

Resource-owning components (camera, geolocation, hardware authenticator)
translate platform failures into these classes at their boundary so that the
decision engine and the calling UI only ever deal with this hierarchy.
"""

from __future__ import annotations

from typing import Optional


class VerificationError(Exception):
    """Base class for every failure surfaced by the verification pipeline."""

    code = "verification_error"
    retryable = True
    security_boundary = False
    default_message = "Verification failed."
    default_remediation: Optional[str] = None

    def __init__(self, message: Optional[str] = None, *, remediation: Optional[str] = None) -> None:
        self.message = message or self.default_message
        self.remediation = remediation or self.default_remediation
        super().__init__(self.message)

    def as_dict(self) -> dict[str, object]:
        return {
            "code": self.code,
            "message": self.message,
            "remediation": self.remediation,
            "retryable": self.retryable,
        }


class PermissionDenied(VerificationError):
    code = "permission_denied"
    retryable = False
    default_message = "Access to the device was denied."
    default_remediation = "Allow access in your browser or device settings and try again."


class DeviceUnavailable(VerificationError):
    code = "device_unavailable"
    retryable = False
    default_message = "The required device is not available."
    default_remediation = "Check that the hardware is connected and enabled."


class VerificationTimeout(VerificationError):
    code = "timeout"
    default_message = "The operation timed out."


class ModelLoadTimeout(VerificationTimeout):
    code = "model_load_timeout"
    default_message = "Face recognition models did not finish loading in time."
    default_remediation = "Reload the page and try again."


class ModelLoadFailed(VerificationError):
    code = "model_load_failed"
    default_message = "Face recognition models failed to load."
    default_remediation = "Reload the page and try again."


class NoFaceDetected(VerificationError):
    code = "no_face_detected"
    default_message = "No face detected."
    default_remediation = "Make sure your face is clearly visible in the frame."


class LowImageQuality(VerificationError):
    code = "low_image_quality"
    default_message = "The captured image quality is too low."
    default_remediation = "Improve the lighting and hold the camera steady."

    def __init__(self, message: Optional[str] = None, *, issues=(), **kwargs) -> None:
        self.issues = tuple(issues)
        super().__init__(message, **kwargs)


class LowConfidenceMatch(VerificationError):
    code = "low_confidence_match"
    default_message = "Face verification failed."

    def __init__(self, message: Optional[str] = None, *, confidence: float = 0.0, **kwargs) -> None:
        self.confidence = confidence
        super().__init__(message or f"Face verification failed. Confidence: {confidence:.1f}%", **kwargs)


class OutOfRange(VerificationError):
    code = "out_of_range"
    default_remediation = "Move closer to the attendance location and try again."

    def __init__(self, distance_m: float, radius_m: float, **kwargs) -> None:
        self.distance_m = distance_m
        self.radius_m = radius_m
        super().__init__(
            f"You are {distance_m:.0f}m away from the office. Please move closer.", **kwargs
        )


class InvalidCoordinate(VerificationError, ValueError):
    code = "invalid_coordinate"
    retryable = False
    default_message = "Coordinates are outside the valid range."


class PossibleCredentialClone(VerificationError):
    code = "possible_credential_clone"
    retryable = False
    security_boundary = True
    default_message = "The hardware credential reported a signature counter that did not increase."
    default_remediation = "The credential was flagged for review. Contact an administrator."


class SignatureInvalid(VerificationError):
    code = "signature_invalid"
    retryable = False
    security_boundary = True
    default_message = "The hardware credential response could not be verified."


class UnknownCredential(VerificationError):
    code = "unknown_credential"
    retryable = False
    security_boundary = True
    default_message = "The credential is not registered for this employee."


class CredentialNotRegistered(VerificationError):
    code = "credential_not_registered"
    retryable = False
    default_message = "No hardware credentials found."
    default_remediation = "Register your device first."


class InvalidState(VerificationError):
    code = "invalid_state"
    default_message = "This device is already registered."
    default_remediation = (
        "Use a different device or remove the existing registration."
    )


class AuthenticatorCancelled(VerificationError):
    code = "authenticator_cancelled"
    default_message = "The request was cancelled or not allowed."
    default_remediation = "Please try again."


class UnsupportedAlgorithm(DeviceUnavailable):
    code = "unsupported_algorithm"
    default_message = "The authenticator does not support the required algorithms."
    default_remediation = (
        "Use a device with Face ID, Touch ID, Windows Hello, or a security key."
    )


class ChallengeExpired(VerificationError):
    code = "challenge_expired"
    default_message = "The challenge expired or was already used."


class InvalidTransition(VerificationError):
    code = "invalid_transition"
    default_message = "That action is not available right now."


class ProfileNotFound(VerificationError):
    code = "profile_not_found"
    retryable = False
    default_message = "No enrolled face profile for this employee."
    default_remediation = "Complete face enrollment first."


class PolicyNotConfigured(VerificationError):
    code = "policy_not_configured"
    retryable = False
    default_message = "Attendance location not configured."

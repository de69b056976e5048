"""Project-specific exception types."""


class AvatarFormatError(ValueError):
    """Raised when a file is not a readable GLB / VRM container."""


class NotHumanoidError(ValueError):
    """Raised when an avatar has no usable humanoid bone mapping."""


class ScalingError(ValueError):
    """Raised when scaling parameters are invalid or cannot be reached."""

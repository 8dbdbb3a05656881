"""Face scan server: six-pose capture, vision-oracle pose checks and facial metric history."""

__version__ = "1.0.0"

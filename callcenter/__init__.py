"""Call-center OTP relay and realtime hub."""

__version__ = "0.1.0"

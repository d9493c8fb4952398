"""gproj: declarative provisioning of a single Google Cloud project."""

__version__ = "0.1.0"

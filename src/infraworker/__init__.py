"""infraworker: provisioning worker for table-store infrastructure."""

__version__ = "0.1.0"

"""
Record model, persistence and lifecycle for the single stored credential.

The record is serialized to JSON, encrypted with Fernet and stored as one
S3 object. `SecretLifecycle` owns every transition of that record.
"""

from .models import Credential, Phase, Record

__all__ = ["Credential", "Phase", "Record"]

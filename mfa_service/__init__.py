"""
MFA Gate - multi-factor authentication service.

TOTP enrollment and verification, backup codes, lockout, and the
first-login password replacement flow, in front of a remote identity
service that owns the user records.
"""

__version__ = "0.1.0"
__author__ = "MFA Gate Team"

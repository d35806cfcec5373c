"""
Compliance Notice Tracking System

Turns regulatory notices found in a user's inbox into tracked obligations:
deduplicated intake, normalized deadlines and penalties, risk scoring and
multi-channel reminders with retry and fallback.
"""

__version__ = "1.0.0"
__author__ = "Compliance Notice Tracking Team"

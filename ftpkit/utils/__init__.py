"""Utility module for ftpkit.

This module provides cross-cutting utilities:
- Logging: Configured logging with PII redaction
- Validators: Input validation for hosts, ports, paths
- Threading: Background task helpers and callback dispatch
"""

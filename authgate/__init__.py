"""
authgate
========

Session-based authentication gate for web applications backed by an OAuth 2.0
/ OpenID Connect identity provider.
"""

__version__ = "1.0.0"

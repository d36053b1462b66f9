"""
Profile Package
===============

Endpoints the portal's pages call on behalf of the signed-in user.

Main Components:
----------------
- routes.py: FastAPI router (/api/me, /api/token, /api/userattributes, /api/verifycode)
- verify.py: Step-Up Verifier Gateway
- directory.py: Microsoft Graph client for profile reads and writes
"""

from .routes import profile_router

__all__ = ["profile_router"]

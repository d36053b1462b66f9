"""
Identity Portal Application Package

FastAPI service signing users in through three OIDC sign-in schemes
(OpenIdConnect, ArkoseFraudProtection, EmailOtp), with step-up verification
and token exchange for downstream APIs.

Packages:
- auth: Sign-in pipeline, session tickets, token exchange, policies
- profile: Profile endpoints and the Step-Up Verifier Gateway

Entry point: ``portal.app.main:create_app`` (uvicorn ``--factory``).
"""

"""
Authentication Package

This package implements the sign-in pipeline of the portal: three OIDC
sign-in schemes, per-request scheme selection, step-up challenges and token
exchange for downstream APIs.

Modules:
- schemes: Scheme table and the Scheme Router
- protocol: Authorization request and the sign-in protocol customizer
- claims: Principal and the post-authentication claims augmenter
- metadata: Issuer configuration and signing-key resolver
- validation: ID token and bearer token validation
- session: Encrypted per-scheme session tickets
- handlers: Redirect and callback pipelines of one scheme
- challenge: Claims challenge detection for downstream errors
- tokens: Token exchange for downstream APIs
- policies: Authorization policies
- errors: Error taxonomy and error-page redirects
- routes: /auth/signin, /auth/callback/{scheme}, /auth/signout, /auth/error
"""

from .routes import auth_router

__all__ = [
    "auth_router",
]

"""
Authentication for WorkOS-issued session tokens.

This package provides:
- Session token verification against the provider JWKS
- Claim parsing and registration intent
- FastAPI dependencies resolving the request's AuthorizationContext

SECURITY NOTES:
- WorkOS is the ONLY authentication authority
- NO custom tokens are issued by this application
- Submodules are imported directly; this package re-exports nothing so that
  the error taxonomy can be imported without pulling in the verifier
"""

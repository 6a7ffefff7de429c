"""
Authentication Package

This package handles Discord OAuth2 authentication and the service's own
session tokens.

Modules:
- provider: Discord OAuth2 / REST client (code exchange, refresh, revoke,
  user info, entitlements)
- encryption: Fernet sealing of refresh tokens at rest
- session: Session JWT issuance and validation, bearer dependency
- service: Authentication flow orchestration
- routes: Public authentication endpoints (/auth/exchange, /auth/me, ...)

The authentication flow:
1. Client obtains an authorization code from Discord (Activity SDK)
2. Client posts it to /auth/exchange
3. Service exchanges it, stores the user with the encrypted refresh token,
   reconciles entitlements, and issues a session JWT
4. Client uses the session JWT for subsequent API requests
"""

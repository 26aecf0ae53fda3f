"""Authentication for the chat channel.

Services:
    - TokenService: verifies storefront access tokens (PyJWT, HS256).
"""

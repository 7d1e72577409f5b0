"""Authentication module.

Verifies the bearer JWTs issued by the REST API.

Services:
    - TokenService: token verification (and issuance for tests/tooling).
"""

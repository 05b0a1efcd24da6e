"""
tokengen - Local OAuth2 Authorization-Code Flow

Runs a short-lived callback server, validates the state token, exchanges
the authorization code and hands the token back to the waiting CLI.
Part of oauth-tokengen - local OAuth2 authorization-code helper.
"""

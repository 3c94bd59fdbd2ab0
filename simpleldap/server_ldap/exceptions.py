from __future__ import annotations
from enum import IntEnum


class ResultCode(IntEnum):
    """Subset of RFC 4511 result codes that simpleldap answers with"""

    success = 0
    operationsError = 1
    invalidAttributeSyntax = 21
    invalidCredentials = 49
    other = 80


class LDAPError(Exception):
    """
    Error that ends an operation with `result_code` and `diagnostic`
    sent to the client
    """

    result_code = ResultCode.other
    diagnostic = "Internal Server Error"

    def __init__(self, diagnostic: str | None = None) -> None:
        if diagnostic is not None:
            self.diagnostic = diagnostic
        super().__init__(self.diagnostic)


class MalformedDn(LDAPError):
    result_code = ResultCode.invalidAttributeSyntax
    diagnostic = "DN non-conformant"


class InvalidCredential(LDAPError):
    result_code = ResultCode.invalidCredentials
    diagnostic = "invalid credentials"


class OperationsError(LDAPError):
    # store details stay in the server log
    result_code = ResultCode.operationsError


class InternalError(LDAPError):
    """Undecodable or unsupported message. Fatal to the connection"""

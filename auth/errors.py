"""
auth/errors.py -- Sign-in error taxonomy.

Every AuthError carries a short code. The API layer renders it as a redirect to
/signin?error=<code>, so the sign-in page can show a message specific to the
failure. Plain authorization denials (disposable email, missing group) are not
errors: the gate returns False and the route raises AccessDeniedError, which
deliberately does not say why.

Not-found is never an exception here: store lookups return None.
"""


class AuthError(Exception):
    code = "Default"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)


class MissingEmailError(AuthError):
    code = "MissingEmail"

    def __init__(self, message: str = "Provider did not forward email but it is required") -> None:
        super().__init__(message)


class SignupDisabledError(AuthError):
    code = "sign-up-disabled"


class RateLimitedError(AuthError):
    code = "rate-limited"


class AccessDeniedError(AuthError):
    code = "AccessDenied"


class VerificationError(AuthError):
    code = "Verification"


class CredentialsSignInError(AuthError):
    code = "CredentialsSignin"


class OAuthCallbackError(AuthError):
    code = "OAuthCallback"


class AccountNotLinkedError(AuthError):
    code = "OAuthAccountNotLinked"


class EmailSignInError(AuthError):
    code = "EmailSignin"

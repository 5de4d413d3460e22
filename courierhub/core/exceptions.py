from fastapi import HTTPException, status


class CourierError(HTTPException):
    """Base class for every rejected engine operation.

    ``code`` is the stable error kind surfaced to clients, ``detail`` names the
    precondition that failed so the user knows what to do next.
    """

    code = "error"

    def __init__(self, status_code: int, detail: str):
        super().__init__(status_code=status_code, detail=detail)

    def __str__(self) -> str:
        return f"{self.code}: {self.detail}"


class InvalidInputError(CourierError):
    code = "invalid_input"

    def __init__(self, detail: str):
        super().__init__(status.HTTP_422_UNPROCESSABLE_ENTITY, detail)


class InsufficientFundsError(CourierError):
    code = "insufficient_funds"

    def __init__(self, balance, required):
        self.balance = balance
        self.required = required
        super().__init__(
            status.HTTP_402_PAYMENT_REQUIRED,
            f"Wallet balance ${balance} is less than the ${required} required; top up your wallet first",
        )


class ForbiddenError(CourierError):
    code = "forbidden"

    def __init__(self, detail: str = "You are not allowed to perform this action"):
        super().__init__(status.HTTP_403_FORBIDDEN, detail)


class InvalidStateError(CourierError):
    code = "invalid_state"

    def __init__(self, detail: str):
        super().__init__(status.HTTP_409_CONFLICT, detail)


class SelfBidNotAllowedError(CourierError):
    code = "self_bid_not_allowed"

    def __init__(self):
        super().__init__(status.HTTP_409_CONFLICT, "You cannot bid on your own listing")


class FeeTooLowError(CourierError):
    code = "fee_too_low"

    def __init__(self, minimum):
        self.minimum = minimum
        super().__init__(status.HTTP_422_UNPROCESSABLE_ENTITY, f"Fee must be at least ${minimum}")


class InvalidOtpError(CourierError):
    code = "invalid_otp"

    def __init__(self):
        super().__init__(status.HTTP_400_BAD_REQUEST, "The OTP code is incorrect. Please verify and try again.")


class NotFoundError(CourierError):
    code = "not_found"

    def __init__(self, kind: str, entity_id: str):
        super().__init__(status.HTTP_404_NOT_FOUND, f"{kind} {entity_id} not found")


class UnauthorizedError(CourierError):
    code = "unauthorized"

    def __init__(self, detail: str = "Invalid or missing authentication"):
        super().__init__(status.HTTP_401_UNAUTHORIZED, detail)

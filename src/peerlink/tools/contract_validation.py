from .errors import ErrorCode


class BaseType:

    def __init__(self):
        raise Exception("Cannot instantiate")

    @staticmethod
    def validate():
        raise NotImplementedError("Subclasses should implement this!")


class NumberType(BaseType):

    @staticmethod
    def validate(value):
        if not isinstance(value, (int, float)):
            raise TypeError("Value must be a number.")


class StringType(BaseType):

    @staticmethod
    def validate(value):
        if not isinstance(value, str):
            raise TypeError("Value must be a string.")


class ListType(BaseType):

    def __init__(self, item_type):
        self.item_type = item_type

    def validate(self, value):

        if not isinstance(value, list):
            raise TypeError("Value must be a list.")

        for item in value:
            if isinstance(self.item_type, dict):
                validate_contract(self.item_type, item)
            else:
                self.item_type.validate(item)


class OptionalType(BaseType):

    def __init__(self, item_type):
        self.item_type = item_type

    def validate(self, value):
        if value is not None:
            self.item_type.validate(value)


## Envelope shared by every inbound server message
ENVELOPE = {
    "msgType": StringType,
    "senderPeerId": OptionalType(StringType),
    "targetPeerId": OptionalType(StringType),
    "targetRoom": OptionalType(StringType),
    "targetGroup": OptionalType(StringType),
}

## Negotiation payloads
SESSION_DESCRIPTION = {
    "type": StringType,
    "sdp": StringType,
}

CANDIDATE = {
    "candidate": StringType,
    "label": OptionalType(NumberType),
    "id": OptionalType(StringType),
}

ERROR_DATA = {
    "errorCode": StringType,
    "errorText": StringType,
}


def validate_contract(contract, data):
    if not isinstance(data, dict):
        raise TypeError("Value must be an object.")
    for key, value in contract.items():
        if key not in data:
            if isinstance(value, OptionalType):
                continue
            raise KeyError(f"Missing key: {key}")
        if isinstance(value, dict):
            validate_contract(value, data[key])
        else:
            value.validate(data[key])


def is_valid(contract, data) -> bool:
    """Boolean form of validate_contract for protocol checks that drop bad units."""
    try:
        validate_contract(contract, data)
        return True
    except (KeyError, TypeError):
        return False


def error_ack(error_code, error_text: str) -> dict:
    """Build the acknowledgment payload the server expects for a failed message."""
    code = error_code.value if isinstance(error_code, ErrorCode) else error_code
    return {
        "msgType": "error",
        "msgData": {"errorCode": code, "errorText": error_text},
    }


def validate_contract_with_error_response(contract, data):
    """
    Validate a contract and return an error acknowledgment if validation fails.

    Args:
        contract: The contract schema to validate against
        data: The data to validate

    Returns:
        tuple: (is_valid: bool, error_response: dict or None)
            - If valid: (True, None)
            - If invalid: (False, error acknowledgment with errorCode and errorText)
    """
    from .logger import log_error

    try:
        validate_contract(contract, data)
        return (True, None)
    except KeyError as e:
        log_error(f"Contract validation error - missing field: {e}")
        return (
            False,
            error_ack(ErrorCode.DEVELOPER_ERR, f"Missing required field: {str(e)}"),
        )
    except TypeError as e:
        log_error(f"Contract validation error - type mismatch: {e}")
        return (
            False,
            error_ack(ErrorCode.DEVELOPER_ERR, f"Invalid field type: {str(e)}"),
        )
    except Exception as e:
        log_error(f"Contract validation error: {e}")
        return (
            False,
            error_ack(ErrorCode.DEVELOPER_ERR, f"Validation error: {str(e)}"),
        )

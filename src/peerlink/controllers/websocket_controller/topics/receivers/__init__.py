from functools import wraps
from .....tools.logger import *
from .....tools.contract_validation import validate_contract_with_error_response


def topic(name):
    """
    Decorator to register a topic handler.
    """

    def wrapper(init):
        log_info(f"Registering topic: {name}")
        return init

    return wrapper


def validate_message(contract, name):
    """
    Decorator to validate incoming messages against a contract schema.

    An invalid message is answered with the error acknowledgment
    {"msgType": "error", "msgData": {"errorCode", "errorText"}} and never
    reaches the wrapped handler.

    Args:
        contract: The contract schema to validate against
        name: The topic name, used in log messages

    Returns:
        Decorator function
    """

    def decorator(func):
        @wraps(func)
        async def wrapper(message, *args, **kwargs):
            is_valid, error_response = validate_contract_with_error_response(
                contract, message
            )
            if not is_valid:
                log_warning(f"Rejected invalid {name} message")
                return error_response

            return await func(message, *args, **kwargs)

        return wrapper

    return decorator

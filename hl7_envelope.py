START_BLOCK = '\x0b'
END_BLOCK = '\x1c'
CARRIAGE_RETURN = '\r'

END_SEQUENCE = END_BLOCK + CARRIAGE_RETURN


def wrap_message(message: str) -> str:
    # already framed text comes back unchanged
    if not message.startswith(START_BLOCK):
        message = START_BLOCK + message

    if message.endswith(END_SEQUENCE):
        return message
    if message.endswith(END_BLOCK):
        return message + CARRIAGE_RETURN
    return message + END_SEQUENCE


def unwrap_message(message: str) -> str:
    if len(message) >= 1 and message[0] == START_BLOCK:
        message = message[1:]

    if len(message) >= 2 and message[-2:] == END_SEQUENCE:
        message = message[:-2]
    elif len(message) >= 1 and message[-1] == END_BLOCK:
        message = message[:-1]

    return message


def is_wrapped(message: str) -> bool:
    return len(message) >= 3 and message.startswith(START_BLOCK) and message.endswith(END_SEQUENCE)

"""
This module is to be used with loguru to remove potentially sensitive information such as the user's name
or access tokens embedded in registry URLs.
"""

import re

_TOKEN_QUERY_PATTERN = re.compile(r"([?&](?:access_token|token|key)=)[^&\s]+", re.IGNORECASE)


def obfuscate_message(
    message: str, anonymize_path: bool = True, strip_tokens: bool = True
) -> str:
    """
    Obfuscate the message such that it does not reveal user information.

    The message may contain a path, in which case the path will be anonymized,
    and URLs, in which case credential-like query parameters are masked.

    Args:
        message: The message to obfuscate.
        anonymize_path: Whether to anonymize the path in the message.
        strip_tokens: Whether to mask token-like URL query parameters.

    Returns:
        The obfuscated message.
    """
    if anonymize_path:
        message = _anonymize_path(message)
    if strip_tokens:
        message = _TOKEN_QUERY_PATTERN.sub(r"\1***", message)

    return message


def _anonymize_path(message: str) -> str:
    """
    Anonymize the path in the message such that
    it does not reveal user information such as usernames.

    The input message may or may not contain a path at all.

    OS agnostic.
    """
    # Windows - Only remove the username, keep the drive letter
    message = re.sub(r"([A-Z]:\\Users\\)[^\\]+\\", r"\1...\\", message)
    # macOS
    message = re.sub(r"/Users/[^/]+/", r"/Users/.../", message)
    # Linux
    message = re.sub(r"/home/[^/]+/", r"/home/.../", message)

    return message

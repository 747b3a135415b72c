import ipaddress
import re
from typing import AnyStr

# Allow underscore in host name
_label_valid = re.compile(rb"[A-Z\d\-_]{1,63}$", re.IGNORECASE)


def is_ip_address(host: AnyStr) -> bool:
    if isinstance(host, bytes):
        try:
            host = host.decode("ascii")  # type: ignore
        except UnicodeDecodeError:
            return False
    try:
        ipaddress.ip_address(host)  # type: ignore
    except ValueError:
        return False
    return True


def is_valid_dns_name(host: AnyStr) -> bool:
    """
    Checks if the passed hostname is a syntactically valid DNS name that may be sent as SNI.

    RFC 6066: Literal IPv4 and IPv6 addresses are not permitted in "HostName".
    """
    if isinstance(host, str):
        try:
            host_bytes = host.encode("idna")
        except UnicodeError:
            return False
    else:
        host_bytes = host
    try:
        host_bytes.decode("idna")
    except ValueError:
        return False
    # RFC1035: 255 bytes or less.
    if not host_bytes or len(host_bytes) > 255:
        return False
    if host_bytes.endswith(b"."):
        host_bytes = host_bytes[:-1]
    if is_ip_address(host_bytes):
        return False
    labels = host_bytes.split(b".")
    if not all(_label_valid.match(x) for x in labels):
        return False
    # Labels must not start or end with a hyphen.
    return not any(x.startswith(b"-") or x.endswith(b"-") for x in labels)

"""XML error response rendering for sigv4auth.

Denials use the AWS-style ``<Error>`` document so SDK clients can parse
them. Only the generic public code and message ever reach the body.
"""

from xml.sax.saxutils import escape as _sax_escape

from fastapi.responses import Response

from sigv4auth.errors import SigV4Error


def _escape_xml(value: str) -> str:
    """Escape special XML characters in a string value."""
    return _sax_escape(str(value))


def render_error(
    code: str,
    message: str,
    resource: str = "",
    request_id: str = "",
) -> str:
    """Render an XML error response body.

    Args:
        code: The public error code (e.g. "AccessDenied").
        message: Human-readable error message.
        resource: The resource that triggered the error.
        request_id: An opaque request identifier.

    Returns:
        An XML string in the AWS error response format.
    """
    parts = [
        '<?xml version="1.0" encoding="UTF-8"?>',
        "<Error>",
        f"<Code>{_escape_xml(code)}</Code>",
        f"<Message>{_escape_xml(message)}</Message>",
    ]
    if resource:
        parts.append(f"<Resource>{_escape_xml(resource)}</Resource>")
    if request_id:
        parts.append(f"<RequestId>{_escape_xml(request_id)}</RequestId>")
    parts.append("</Error>")
    return "\n".join(parts)


def xml_response(body: str, status: int = 200) -> Response:
    """Wrap an XML body string in a Response with the XML content type."""
    return Response(content=body, status_code=status, media_type="application/xml")


def error_response(
    exc: SigV4Error, method: str, resource: str = "", request_id: str = ""
) -> Response:
    """Render a SigV4Error as a generic denial.

    HEAD responses carry no body.
    """
    if method == "HEAD":
        return Response(status_code=exc.http_status)
    body = render_error(
        code=exc.public_code,
        message=exc.public_message,
        resource=resource,
        request_id=request_id,
    )
    return xml_response(body, status=exc.http_status)

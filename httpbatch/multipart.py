# Copyright (c) 2009-2010 Six Apart Ltd.
# All rights reserved.
#
# Redistribution and use in source and binary forms, with or without
# modification, are permitted provided that the following conditions are met:
#
# * Redistributions of source code must retain the above copyright notice,
#   this list of conditions and the following disclaimer.
#
# * Redistributions in binary form must reproduce the above copyright notice,
#   this list of conditions and the following disclaimer in the documentation
#   and/or other materials provided with the distribution.
#
# * Neither the name of Six Apart Ltd. nor the names of its contributors may
#   be used to endorse or promote products derived from this software without
#   specific prior written permission.
#
# THIS SOFTWARE IS PROVIDED BY THE COPYRIGHT HOLDERS AND CONTRIBUTORS "AS IS"
# AND ANY EXPRESS OR IMPLIED WARRANTIES, INCLUDING, BUT NOT LIMITED TO, THE
# IMPLIED WARRANTIES OF MERCHANTABILITY AND FITNESS FOR A PARTICULAR PURPOSE
# ARE DISCLAIMED. IN NO EVENT SHALL THE COPYRIGHT HOLDER OR CONTRIBUTORS BE
# LIABLE FOR ANY DIRECT, INDIRECT, INCIDENTAL, SPECIAL, EXEMPLARY, OR
# CONSEQUENTIAL DAMAGES (INCLUDING, BUT NOT LIMITED TO, PROCUREMENT OF
# SUBSTITUTE GOODS OR SERVICES; LOSS OF USE, DATA, OR PROFITS; OR BUSINESS
# INTERRUPTION) HOWEVER CAUSED AND ON ANY THEORY OF LIABILITY, WHETHER IN
# CONTRACT, STRICT LIABILITY, OR TORT (INCLUDING NEGLIGENCE OR OTHERWISE)
# ARISING IN ANY WAY OUT OF THE USE OF THIS SOFTWARE, EVEN IF ADVISED OF THE
# POSSIBILITY OF SUCH DAMAGE.

"""

Wire format of HTTP batch messages: the ``multipart/batch`` envelope and the
``application/http`` messages carried in its parts.

"""

from email import errors
from email.message import Message
from email.parser import BytesFeedParser
from email.utils import collapse_rfc2231_value, quote
from io import BytesIO
import re
from urllib.parse import urlsplit, urlunsplit

from twisted.python import reflect
from twisted.web import http


CRLF = b"\r\n"

MULTIPART_BATCH = 'multipart/batch'
APPLICATION_HTTP = 'application/http'
TRANSFER_ENCODING = 'binary'

# Local convention: any non-empty value sends the subrequest over https.
USE_HTTPS_HEADER = 'x-use-https'

# Headers describing the inbound hop or the framing of the inbound message;
# the outbound request computes its own.
NOT_FORWARDED = frozenset([
    'connection',
    'content-length',
    'host',
    'keep-alive',
    'proxy-connection',
    'transfer-encoding',
])

# Multipart framing problems the email parser only records as defects.
FRAMING_DEFECTS = (
    errors.NoBoundaryInMultipartDefect,
    errors.StartBoundaryNotFoundDefect,
    errors.CloseBoundaryNotFoundDefect,
    errors.MultipartInvariantViolationDefect,
)

_TSPECIALS = re.compile(r'[ \t()<>@,;:\\"/\[\]?=]')

# RFC 2046 bchars; a space may not end the boundary.
_BOUNDARY = re.compile(r"[0-9A-Za-z'()+_,\-./:=? ]{0,69}[0-9A-Za-z'()+_,\-./:=?]\Z")


class BatchError(Exception): pass
class EnvelopeError(BatchError): pass
class ParserError(BatchError): pass
class BadRequestException(ParserError): pass
class BadResponseException(BatchError): pass
class ComposerError(BatchError): pass


def is_application_http(value):
    """Return whether `value` names ``application/http``, ignoring any
    parameters such as ``;version=1.1``."""
    if not value:
        return False
    return value.split(';', 1)[0].strip().lower() == APPLICATION_HTTP


def format_param(value):
    if not value or _TSPECIALS.search(value):
        return '"%s"' % quote(value)
    return value


def content_type(boundary):
    """Return the Content-Type header value of a batch with `boundary`."""
    return '%s; type="%s"; boundary=%s' % (MULTIPART_BATCH, APPLICATION_HTTP,
                                           format_param(boundary))


def parse_content_type(value):
    """Validate the Content-Type header of a batch request.

    Returns the boundary token. Raises `EnvelopeError` naming the violated
    expectation when the header does not declare ``multipart/batch`` with a
    ``type`` of ``application/http`` and a boundary.

    """
    if not value or not value.strip():
        raise EnvelopeError("could not parse Content-Type header: no Content-Type given")

    mediatype = value.split(';', 1)[0].strip().lower()
    maintype, sep, subtype = mediatype.partition('/')
    if not sep or not maintype or not subtype or '/' in subtype:
        raise EnvelopeError("could not parse Content-Type header: invalid media type %r" % mediatype)
    if mediatype != MULTIPART_BATCH:
        raise EnvelopeError("expected Content-Type to be %s but was %s"
                            % (MULTIPART_BATCH, mediatype))

    msg = Message()
    msg['Content-Type'] = value
    part_type = msg.get_param('type')
    if isinstance(part_type, tuple):
        part_type = collapse_rfc2231_value(part_type)
    if not is_application_http(part_type):
        raise EnvelopeError("expected Content-Type param 'type' to be %s but was %s"
                            % (APPLICATION_HTTP, part_type))

    boundary = msg.get_boundary()
    if not boundary:
        raise EnvelopeError("expected boundary field to be present in Content-Type")
    if not _BOUNDARY.match(boundary):
        raise EnvelopeError("expected boundary field to be 1 to 70 RFC 2046 characters but was %r"
                            % boundary)
    return boundary


def get_header(headers, name, default=None):
    name = name.lower()
    for header, value in headers:
        if header.lower() == name:
            return value
    return default


def read_message_head(data):
    """Split a raw HTTP message into its start line, its headers as a list
    of ``(name, value)`` pairs, and the bytes following the header block.

    Both CRLF and bare LF line endings are accepted. Raises `ValueError` on
    a malformed header line.

    """
    fp = BytesIO(data)
    line = fp.readline()
    # Ignore empty lines ahead of the start line (RFC 7230 3.5).
    while line in (b'\r\n', b'\n'):
        line = fp.readline()
    start_line = line.rstrip(b'\r\n').decode('latin-1')

    headers = []
    while True:
        line = fp.readline()
        if not line.strip():
            break
        if line[:1] in (b' ', b'\t'):
            if not headers:
                raise ValueError("continuation line before any header: %r" % line)
            header, value = headers[-1]
            headers[-1] = (header, '%s %s' % (value, line.strip().decode('latin-1')))
            continue
        header, sep, value = line.partition(b':')
        if not sep or not header.strip():
            raise ValueError("malformed header line: %r" % line)
        headers.append((header.strip().decode('latin-1'), value.strip().decode('latin-1')))

    return start_line, headers, fp.read()


def decode_chunked(data):
    fp = BytesIO(data)
    chunks = []
    while True:
        line = fp.readline()
        try:
            size = int(line.split(b';', 1)[0].strip(), 16)
        except ValueError:
            raise ValueError("invalid chunk size line: %r" % line)
        if size == 0:
            break
        chunk = fp.read(size)
        if len(chunk) < size:
            raise ValueError("chunked body ended after %d of %d bytes"
                             % (len(chunk), size))
        chunks.append(chunk)
        fp.readline()
    return b''.join(chunks)


def read_body(headers, rest, until_eof=False):
    """Return the message body framed by `headers` out of the bytes `rest`.

    Without a chunked transfer-coding or a Content-Length, a request has no
    body; pass `until_eof` to take all of `rest` instead, as for responses.

    """
    encoding = get_header(headers, 'transfer-encoding')
    if encoding and encoding.split(',')[-1].strip().lower() == 'chunked':
        return decode_chunked(rest)

    length = get_header(headers, 'content-length')
    if length is not None:
        try:
            length = int(length)
        except ValueError:
            raise ValueError("invalid Content-Length: %r" % length)
        if length < 0:
            raise ValueError("invalid Content-Length: %d" % length)
        if len(rest) < length:
            raise ValueError("body ended after %d of %d bytes" % (len(rest), length))
        return rest[:length]

    if until_eof:
        return rest
    return b''


class HTTPRequest(object):
    """One subrequest of a batch, completed into an absolute outbound URL.

    `content_id` is the client's correlation identifier for the request; the
    response to it is returned in a part whose In-Reply-To names it.

    """

    def __init__(self, content_id, method, url, headers=None, body=b''):
        self.content_id = content_id
        self.method = method
        self.url = url
        if headers is None:
            headers = []
        self.headers = headers
        self.body = body or b''

    @classmethod
    def parse(cls, data, content_id, use_https=False):
        try:
            request_line, headers, rest = read_message_head(data)
        except ValueError as exc:
            raise BadRequestException(str(exc))

        parts = request_line.split()
        if len(parts) != 3:
            raise BadRequestException("malformed request line: %r" % request_line)
        method, target, version = parts
        if not version.startswith('HTTP/'):
            raise BadRequestException("malformed HTTP version: %r" % version)

        try:
            body = read_body(headers, rest)
        except ValueError as exc:
            raise BadRequestException(str(exc))

        # An absolute-form target names its own host; otherwise use Host.
        target_parts = urlsplit(target)
        host = target_parts.netloc or get_header(headers, 'host', '')
        path = target_parts.path or '/'
        scheme = 'https' if use_https else 'http'
        url = urlunsplit((scheme, host, path, target_parts.query, ''))

        headers = [(header, value) for header, value in headers
                   if header.lower() not in NOT_FORWARDED]
        return cls(content_id, method, url, headers, body)

    def as_bytes(self):
        """Serialize this request as an origin-form HTTP/1.1 message."""
        parts = urlsplit(self.url)
        target = urlunsplit(('', '', parts.path or '/', parts.query, ''))
        lines = ["%s %s HTTP/1.1" % (self.method, target), "Host: %s" % parts.netloc]
        lines.extend("%s: %s" % (header, value) for header, value in self.headers
                     if header.lower() not in NOT_FORWARDED)
        if self.body:
            lines.append("Content-Length: %d" % len(self.body))
        head = "\r\n".join(lines).encode('latin-1')
        return head + CRLF + CRLF + self.body

    def __repr__(self):
        return '<HTTPRequest %s %s (Content-ID %s)>' % (self.method, self.url, self.content_id)


class HTTPResponse(object):
    def __init__(self, status, reason=None, headers=None, body=b'', version='HTTP/1.1'):
        self.status = int(status)
        if reason is None:
            reason = http.RESPONSES.get(self.status, b'').decode('latin-1')
        self.reason = reason
        if headers is None:
            headers = []
        self.headers = headers
        self.body = body or b''
        self.version = version

    @classmethod
    def from_failure(cls, failure):
        """Synthesize the response standing in for a subrequest the
        transport could not perform: a 400 whose body describes `failure`."""
        message = failure.getErrorMessage() or reflect.qual(failure.type)
        return cls(http.BAD_REQUEST, body=message.encode('utf-8'))

    @classmethod
    def parse(cls, data):
        try:
            status_line, headers, rest = read_message_head(data)
            body = read_body(headers, rest, until_eof=True)
        except ValueError as exc:
            raise BadResponseException(str(exc))

        parts = status_line.split(None, 2)
        version = 'HTTP/1.1'
        # Accept a bare "200 OK" status line as well as "HTTP/1.1 200 OK".
        if parts and parts[0].startswith('HTTP/'):
            version = parts.pop(0)
        try:
            status = int(parts[0])
        except (IndexError, ValueError):
            raise BadResponseException("malformed status line: %r" % status_line)
        reason = parts[1] if len(parts) > 1 else ''
        return cls(status, reason, headers, body, version)

    @property
    def bodiless(self):
        return self.status < 200 or self.status in (http.NO_CONTENT, http.NOT_MODIFIED)

    def as_bytes(self):
        length = get_header(self.headers, 'content-length')
        # Bodiless statuses keep whatever length the target sent, and so does
        # an empty body such as the reply to a HEAD.
        if not self.bodiless and (self.body or length is None):
            length = len(self.body)
        lines = ["%s %d %s" % (self.version, self.status, self.reason)]
        lines.extend("%s: %s" % (header, value) for header, value in self.headers
                     if header.lower() not in ('content-length', 'transfer-encoding', 'connection'))
        if length is not None:
            lines.append("Content-Length: %s" % length)
        head = "\r\n".join(lines).encode('latin-1')
        return head + CRLF + CRLF + self.body

    def __repr__(self):
        return '<HTTPResponse %d %s>' % (self.status, self.reason)


class MultipartWriter(object):
    """Writes multipart parts delimited by `boundary` to the binary file
    `fp`."""

    def __init__(self, fp, boundary):
        self.fp = fp
        self.boundary = boundary.encode('latin-1')
        self.parts = 0

    def part(self, headers, payload):
        if self.parts:
            self.fp.write(CRLF)
        self.fp.write(b'--' + self.boundary + CRLF)
        for header, value in headers:
            self.fp.write(('%s: %s' % (header, value)).encode('latin-1') + CRLF)
        self.fp.write(CRLF)
        self.fp.write(payload)
        self.parts += 1

    def close(self):
        if self.parts:
            self.fp.write(CRLF)
        self.fp.write(b'--' + self.boundary + b'--' + CRLF)


def parse_batch_request(boundary, fp):
    """Parse the body of a batch request read from the binary file `fp`.

    Returns the `HTTPRequest` of every ``application/http`` part in part
    order. Parts without a Content-Type are skipped. Raises `ParserError` if
    the multipart framing is broken, a part has any other Content-Type or
    lacks a Content-ID, or no requests remain.

    """
    parser = BytesFeedParser()
    parser.feed(('Content-Type: %s; boundary="%s"\r\nMIME-Version: 1.0\r\n\r\n'
                 % (MULTIPART_BATCH, quote(boundary))).encode('latin-1'))
    for chunk in iter(lambda: fp.read(65536), b''):
        parser.feed(chunk)
    msg = parser.close()

    for defect in msg.defects:
        if isinstance(defect, FRAMING_DEFECTS):
            raise ParserError("encountered error while parsing multipart message: %s"
                              % defect.__class__.__name__)
    if not msg.is_multipart():
        raise ParserError("encountered error while parsing multipart message: no parts found")

    requests = []
    for part in msg.get_payload():
        # Per the draft, parts whose type is not the declared one are
        # ignored; only a missing type is let through, a wrong one is not.
        part_type = str(part.get('Content-Type', ''))
        if not part_type.strip():
            continue
        if not is_application_http(part_type):
            raise ParserError("expected multipart message Content-Type header to be %s but was %s"
                              % (APPLICATION_HTTP, part_type))

        payload = part.get_payload(decode=True)
        content_id = str(part.get('Content-ID', '')).strip()
        use_https = bool(str(part.get(USE_HTTPS_HEADER, '')).strip())
        try:
            request = HTTPRequest.parse(payload or b'', content_id, use_https)
        except BadRequestException as exc:
            raise BadRequestException("encountered error while parsing multipart request: %s" % exc)

        if not content_id:
            raise ParserError("expected each request to have a present and unique value in the Content-ID header")
        # The compat32 parser hands back undecodable bytes as U+FFFD.
        if not content_id.isascii():
            raise ParserError("expected Content-ID header to be ASCII but was %r" % content_id)
        requests.append(request)

    if not requests:
        raise ParserError("no batch requests present")
    return requests


def compose_batch_request(fp, boundary, requests):
    writer = MultipartWriter(fp, boundary)
    for request in requests:
        headers = [
            ('Content-Type', APPLICATION_HTTP),
            ('Content-Transfer-Encoding', TRANSFER_ENCODING),
            ('Content-ID', request.content_id),
        ]
        if urlsplit(request.url).scheme == 'https':
            headers.append((USE_HTTPS_HEADER, 'true'))
        writer.part(headers, request.as_bytes())
    writer.close()


def compose_batch_response(fp, boundary, outcomes):
    """Write the body of a batch response to the binary file `fp`.

    Each outcome becomes one part, in the given order, whose In-Reply-To
    names the outcome's Content-ID. A failed outcome is written as the
    synthesized 400 response from `HTTPResponse.from_failure`. Raises
    `ComposerError` if the body cannot be serialized or written.

    """
    writer = MultipartWriter(fp, boundary)
    try:
        for outcome in outcomes:
            if outcome.failure is not None:
                response = HTTPResponse.from_failure(outcome.failure)
            else:
                response = outcome.response
            headers = [
                ('Content-Type', APPLICATION_HTTP),
                ('Content-Transfer-Encoding', TRANSFER_ENCODING),
                ('In-Reply-To', outcome.content_id),
            ]
            writer.part(headers, response.as_bytes())
        writer.close()
    except (IOError, ValueError) as exc:
        raise ComposerError("%s: %s" % (exc.__class__.__name__, exc))

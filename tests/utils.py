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

from io import BytesIO

from twisted.internet import defer
from twisted.web import server
from twisted.web.test.requesthelper import DummyRequest
from zope.interface import implementer

from httpbatch.multipart import HTTPResponse
from httpbatch.transport import IDiagnosticLog, IHTTPTransport


CRLF = b"\r\n"


@implementer(IHTTPTransport)
class FakeTransport(object):

    """A transport answering subrequests from canned results.

    `results` maps URLs to an `HTTPResponse` or an exception to fail with;
    other URLs get a 200 response with the body ``hello``. With `pending`,
    every request instead gets an unfired `Deferred`, kept in `deferreds`.

    """

    def __init__(self, results=None, pending=False):
        self.results = results or {}
        self.pending = pending
        self.requests = []
        self.deferreds = []
        self.cancelled = []

    def request(self, subrequest):
        self.requests.append(subrequest)
        if self.pending:
            d = defer.Deferred(lambda d: self.cancelled.append(subrequest))
            self.deferreds.append(d)
            return d
        result = self.results.get(subrequest.url)
        if result is None:
            result = HTTPResponse(200, body=b'hello')
        if isinstance(result, Exception):
            return defer.fail(result)
        return defer.succeed(result)


@implementer(IDiagnosticLog)
class RecordingLog(object):

    def __init__(self):
        self.messages = []

    def msg(self, *message):
        self.messages.append(' '.join(str(m) for m in message))


def part(payload, content_type='application/http', content_id=None, use_https=False):
    headers = []
    if content_type is not None:
        headers.append(b'Content-Type: ' + content_type.encode('ascii'))
    if content_id is not None:
        headers.append(b'Content-ID: ' + content_id.encode('ascii'))
    if use_https:
        headers.append(b'x-use-https: true')
    return CRLF.join(headers + [b'']) + CRLF + payload


def batch_body(boundary, *parts):
    """Frames `parts` into a multipart body delimited by `boundary`."""
    delimiter = b'--' + boundary.encode('ascii')
    body = b''
    for p in parts:
        body += delimiter + CRLF + p + CRLF
    return body + delimiter + b'--' + CRLF


def batch_request(body, content_type='multipart/batch; type="application/http"; boundary=batch',
                  method=b'POST'):
    request = DummyRequest([b''])
    request.method = method
    if content_type is not None:
        request.requestHeaders.setRawHeaders(b'content-type', [content_type.encode('ascii')])
    request.content = BytesIO(body)
    return request


def render(resource, request):
    """Renders `request` with `resource`, returning a `Deferred` that fires
    once the response is finished."""
    result = resource.render(request)
    if isinstance(result, bytes):
        request.write(result)
        request.finish()
        return defer.succeed(None)
    assert result is server.NOT_DONE_YET
    if request.finished:
        return defer.succeed(None)
    return request.notifyFinish()

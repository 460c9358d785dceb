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

Capabilities the batch processor depends on but does not implement: the
transport performing each subrequest, and the operator's diagnostic log.

"""

from io import BytesIO

import httplib2
from twisted.internet import threads
from twisted.python import log
from twisted.web import client
from twisted.web.http_headers import Headers
from zope.interface import Interface, implementer

from httpbatch.multipart import HTTPResponse, get_header


class IHTTPTransport(Interface):

    def request(subrequest):
        """Performs the `httpbatch.multipart.HTTPRequest` `subrequest`.

        Returns a `Deferred` firing with an `httpbatch.multipart.HTTPResponse`,
        or failing if the request could not be performed at all. Error
        statuses returned by the target are responses, not failures.

        """


class IDiagnosticLog(Interface):

    def msg(*message):
        """Records a free-form diagnostic message for the operator."""


@implementer(IDiagnosticLog)
class NullDiagnosticLog(object):
    """The diagnostic log used when none is configured."""

    def msg(self, *message):
        pass


@implementer(IDiagnosticLog)
class TwistedDiagnosticLog(object):

    def __init__(self, system='httpbatch'):
        self.system = system

    def msg(self, *message):
        log.msg(*message, system=self.system)


@implementer(IHTTPTransport)
class AgentTransport(object):

    """Performs subrequests with a `twisted.web.client.Agent`.

    Unless an `agent` is given, the transport makes one over a persistent
    `HTTPConnectionPool` keeping up to `max_persistent_per_host` idle
    connections per host.

    """

    def __init__(self, reactor, agent=None, max_persistent_per_host=2, connect_timeout=None):
        if agent is None:
            pool = client.HTTPConnectionPool(reactor, persistent=True)
            pool.maxPersistentPerHost = max_persistent_per_host
            agent = client.Agent(reactor, connectTimeout=connect_timeout, pool=pool)
        self.agent = agent

    def request(self, subrequest):
        headers = Headers()
        for header, value in subrequest.headers:
            headers.addRawHeader(header.encode('latin-1'), value.encode('latin-1'))
        producer = None
        if subrequest.body:
            producer = client.FileBodyProducer(BytesIO(subrequest.body))

        d = self.agent.request(subrequest.method.encode('ascii'),
                               subrequest.url.encode('ascii'),
                               headers, producer)
        d.addCallback(self.read_response)
        return d

    def read_response(self, response):
        headers = []
        for header, values in response.headers.getAllRawHeaders():
            header = header.decode('latin-1')
            headers.extend((header, value.decode('latin-1')) for value in values)

        d = client.readBody(response)
        d.addErrback(self._partial_body, headers)
        d.addCallback(self._build_response, response, headers)
        return d

    def _partial_body(self, failure, headers):
        # Without a Content-Length the body ends when the connection closes,
        # which readBody reports as a partial download.
        failure.trap(client.PartialDownloadError)
        if get_header(headers, 'content-length') is not None:
            return failure
        return failure.value.response

    def _build_response(self, body, response, headers):
        protocol, major, minor = response.version
        version = '%s/%d.%d' % (protocol.decode('ascii'), major, minor)
        return HTTPResponse(response.code, response.phrase.decode('latin-1'),
                            headers, body, version)


@implementer(IHTTPTransport)
class HTTPLib2Transport(object):

    """Performs subrequests with blocking `httplib2.Http` requests run in a
    thread pool.

    A new `httplib2.Http` is made for every subrequest, since one may not be
    used from several threads at once. Redirects are returned to the batch
    client rather than followed.

    """

    def __init__(self, reactor, threadpool=None, timeout=None):
        self.reactor = reactor
        self.threadpool = threadpool
        self.timeout = timeout

    def request(self, subrequest):
        threadpool = self.threadpool
        if threadpool is None:
            threadpool = self.reactor.getThreadPool()
        return threads.deferToThreadPool(self.reactor, threadpool,
                                         self.blocking_request, subrequest)

    def blocking_request(self, subrequest):
        http = httplib2.Http(timeout=self.timeout)
        http.follow_redirects = False

        headers = {}
        for header, value in subrequest.headers:
            header = header.lower()
            if header in headers:
                headers[header] = '%s, %s' % (headers[header], value)
            else:
                headers[header] = value

        response, content = http.request(subrequest.url, method=subrequest.method,
                                         body=subrequest.body or None, headers=headers)
        return response_from_httplib2(response, content)


def response_from_httplib2(response, content):
    """Converts an `httplib2.Response` and its content into an
    `httpbatch.multipart.HTTPResponse`."""
    # httplib2 keeps the status and its own bookkeeping (such as a
    # "-content-encoding" for content it decompressed) among the headers.
    headers = [(header, value) for header, value in response.items()
               if header != 'status' and not header.startswith('-')]
    version = 'HTTP/%d.%d' % divmod(response.version, 10)
    return HTTPResponse(response.status, response.reason, headers, content, version)

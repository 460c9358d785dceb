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

A Twisted Web resource serving batch requests, and a command line for
running it.

"""

from io import BytesIO
import sys

from twisted.internet import reactor
from twisted.python import log, usage
from twisted.web import http, resource, server

from httpbatch import multipart
from httpbatch.dispatch import Dispatcher
from httpbatch.transport import (AgentTransport, HTTPLib2Transport,
    NullDiagnosticLog, TwistedDiagnosticLog)


GENERIC_ERROR = "something went wrong while processing the batch request"


def error_body(request, code, message):
    """Sets up `request` for a plain text error response and returns its
    body."""
    body = message.encode('utf-8')
    request.setResponseCode(code)
    request.setHeader(b'content-type', b'text/plain; charset=utf-8')
    request.setHeader(b'content-length', b'%d' % len(body))
    return body


class BatchRequest(object):

    """A batch request being processed.

    Dispatches the subrequests and, once they have all completed, writes the
    batch response to the inbound `request`. If the client goes away first,
    the subrequests still in flight are cancelled.

    """

    def __init__(self, request, boundary, subrequests, dispatcher, diagnostic_log):
        self.request = request
        self.boundary = boundary
        self.subrequests = subrequests
        self.dispatcher = dispatcher
        self.diagnostic_log = diagnostic_log
        self.deferred = None
        self.disconnected = False

    def process(self):
        self.deferred = self.dispatcher.dispatch(self.subrequests)
        self.deferred.addCallback(self.render_batch)
        self.deferred.addErrback(self.processing_failed)
        # A batch answered synchronously has already finished the request.
        if not self.request.finished:
            self.request.notifyFinish().addErrback(self.connection_lost)
        return self.deferred

    def connection_lost(self, reason):
        self.disconnected = True
        log.msg('Batch client went away: %s' % reason.getErrorMessage())
        self.deferred.cancel()

    def render_batch(self, outcomes):
        if self.disconnected:
            log.msg('Discarding %d subresponses for a lost batch client' % len(outcomes))
            return

        body = BytesIO()
        try:
            multipart.compose_batch_response(body, self.boundary, outcomes)
        except multipart.ComposerError as exc:
            self.diagnostic_log.msg('encountered an error while processing batch request:', str(exc))
            self.request.write(error_body(self.request, http.INTERNAL_SERVER_ERROR, GENERIC_ERROR))
        else:
            content = body.getvalue()
            self.request.setResponseCode(http.OK)
            self.request.setHeader(b'content-type',
                                   multipart.content_type(self.boundary).encode('latin-1'))
            self.request.setHeader(b'content-length', b'%d' % len(content))
            self.request.write(content)
        self.request.finish()

    def processing_failed(self, failure):
        log.err(failure, 'Unhandled error processing batch request')
        if not self.disconnected:
            self.request.write(error_body(self.request, http.INTERNAL_SERVER_ERROR, GENERIC_ERROR))
            self.request.finish()


class BatchResource(resource.Resource):

    """Serves batch requests per the HTTP batch draft specification:

        https://tools.ietf.org/id/draft-snell-http-batch-00.html

    Subrequests are performed through `transport`, a provider of
    `httpbatch.transport.IHTTPTransport`. Errors composing a batch response
    are recorded to `diagnostic_log`, a provider of
    `httpbatch.transport.IDiagnosticLog`, if given. `max_concurrency` and
    `timeout` configure the `httpbatch.dispatch.Dispatcher`.

    """

    isLeaf = True

    def __init__(self, transport, diagnostic_log=None, max_concurrency=None, timeout=None,
                 reactor=reactor):
        resource.Resource.__init__(self)
        if diagnostic_log is None:
            diagnostic_log = NullDiagnosticLog()
        self.diagnostic_log = diagnostic_log
        self.dispatcher = Dispatcher(transport, max_concurrency, timeout, reactor)

    def parse_batch_request(self, request):
        content_type = request.getHeader(b'content-type') or b''
        boundary = multipart.parse_content_type(content_type.decode('latin-1'))
        request.content.seek(0, 0)
        return boundary, multipart.parse_batch_request(boundary, request.content)

    def render(self, request):
        if request.method != b'POST':
            return error_body(request, http.NOT_FOUND, "404 route not found")

        try:
            boundary, subrequests = self.parse_batch_request(request)
        except multipart.BatchError as exc:
            return error_body(request, http.BAD_REQUEST, str(exc))

        log.msg('Dispatching batch of %d subrequests' % len(subrequests))
        BatchRequest(request, boundary, subrequests, self.dispatcher,
                     self.diagnostic_log).process()
        return server.NOT_DONE_YET


class Options(usage.Options):

    synopsis = "[options]"
    longdesc = "Serves batch HTTP requests, performing their subrequests concurrently."

    optParameters = [
        ['port', 'p', 8080, "Port to listen on.", int],
        ['interface', 'i', '', "Interface to listen on (all by default)."],
        ['path', None, 'batch', "Path at which to serve batch requests."],
        ['transport', 't', 'agent', "Transport performing subrequests: agent or httplib2."],
        ['max-concurrency', 'c', 0, "Most subrequests of a batch to perform at once (0 for no limit).", int],
        ['timeout', None, 0, "Seconds after which a subrequest is abandoned (0 for none).", float],
    ]

    optFlags = [
        ['quiet', 'q', "Don't log diagnostics about batch responses that could not be composed."],
    ]

    def postOptions(self):
        if self['transport'] not in ('agent', 'httplib2'):
            raise usage.UsageError("Unknown transport %r" % self['transport'])
        if self['max-concurrency'] < 0:
            raise usage.UsageError("--max-concurrency must not be negative")
        if self['timeout'] < 0:
            raise usage.UsageError("--timeout must not be negative")


def make_transport(options, reactor=reactor):
    timeout = options['timeout'] or None
    if options['transport'] == 'httplib2':
        return HTTPLib2Transport(reactor, timeout=timeout)
    return AgentTransport(reactor, connect_timeout=timeout)


def make_site(options, reactor=reactor):
    if options['quiet']:
        diagnostic_log = NullDiagnosticLog()
    else:
        diagnostic_log = TwistedDiagnosticLog()
    batch = BatchResource(make_transport(options, reactor), diagnostic_log,
                          options['max-concurrency'] or None, options['timeout'] or None,
                          reactor)

    segments = [segment.encode('utf-8') for segment in options['path'].split('/') if segment]
    if not segments:
        return server.Site(batch)
    root = parent = resource.Resource()
    for segment in segments[:-1]:
        child = resource.Resource()
        parent.putChild(segment, child)
        parent = child
    parent.putChild(segments[-1], batch)
    return server.Site(root)


def main(argv=None, reactor=reactor):
    options = Options()
    try:
        options.parseOptions(argv)
    except usage.UsageError as exc:
        sys.stderr.write('%s\n%s\n' % (options, exc))
        return 1

    log.startLogging(sys.stdout)
    site = make_site(options, reactor)
    reactor.listenTCP(options['port'], site, interface=options['interface'])
    log.msg('Serving batch requests at /%s on port %d'
            % (options['path'].strip('/'), options['port']))
    reactor.run()
    return 0


if __name__ == '__main__':
    sys.exit(main())

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

from twisted.internet import defer, reactor
from twisted.python import log

from httpbatch.multipart import HTTPResponse


class Outcome(object):

    """The result of attempting one subrequest.

    Exactly one of `response` (an `httpbatch.multipart.HTTPResponse`) or
    `failure` (a `twisted.python.failure.Failure` from the transport) is
    set. `content_id` is copied from the subrequest.

    """

    def __init__(self, content_id, response=None, failure=None):
        if (response is None) == (failure is None):
            raise ValueError('An Outcome has exactly one of a response or a failure')
        self.content_id = content_id
        self.response = response
        self.failure = failure

    def __repr__(self):
        result = self.failure if self.failure is not None else self.response
        return '<Outcome %s: %r>' % (self.content_id, result)


class Dispatcher(object):

    """Performs the subrequests of a batch concurrently through a transport.

    Parameter `transport` provides `httpbatch.transport.IHTTPTransport`.
    When `max_concurrency` is given, no more than that many subrequests are
    in flight at once; otherwise all of a batch's subrequests are started
    together. When `timeout` is given, a subrequest still running after that
    many seconds is cancelled.

    """

    def __init__(self, transport, max_concurrency=None, timeout=None, reactor=reactor):
        self.transport = transport
        self.semaphore = None
        if max_concurrency:
            self.semaphore = defer.DeferredSemaphore(max_concurrency)
        self.timeout = timeout
        self.reactor = reactor

    def dispatch(self, subrequests):
        """Performs all `subrequests`.

        Returns a `Deferred` firing with one `Outcome` per subrequest, in
        the order they completed, once the last of them has completed. A
        subrequest the transport fails to perform yields a failure outcome
        and does not affect the others.

        Cancelling the returned `Deferred` cancels every subrequest still in
        flight; each of them then yields a failure outcome.

        """
        outcomes = []
        deferreds = [self.perform(subrequest, outcomes) for subrequest in subrequests]
        # Subrequests queued for a slot come last; listing them first means
        # cancelling the batch frees no slot for one of them to take.
        d = defer.DeferredList(deferreds[::-1], consumeErrors=True)
        d.addCallback(lambda _: outcomes)
        return d

    def perform(self, subrequest, outcomes):
        if self.semaphore is None:
            d = self.request(subrequest)
        else:
            d = self.semaphore.run(self.request, subrequest)
        d.addCallback(self.succeeded, subrequest)
        d.addErrback(self.failed, subrequest)
        d.addCallback(outcomes.append)
        return d

    def request(self, subrequest):
        d = defer.maybeDeferred(self.transport.request, subrequest)
        if self.timeout:
            d.addTimeout(self.timeout, self.reactor)
        return d

    def succeeded(self, response, subrequest):
        if not isinstance(response, HTTPResponse):
            raise TypeError('Transport returned %r instead of an HTTPResponse' % (response,))
        return Outcome(subrequest.content_id, response=response)

    def failed(self, failure, subrequest):
        log.msg('Subrequest %s for %s %s failed: %s'
                % (subrequest.content_id, subrequest.method, subrequest.url,
                   failure.getErrorMessage()))
        return Outcome(subrequest.content_id, failure=failure)

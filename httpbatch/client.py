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

The batch HTTP client provides a convenience interface around an
`httplib2.Http` instance for combining multiple requests into one
``multipart/batch`` request, dispatching the subresponses to the requests'
associated callbacks.

"""

import email.feedparser
from io import BytesIO
import logging
import traceback
import uuid

import httplib2

from httpbatch.multipart import (BadResponseException, BatchError, HTTPRequest,
    HTTPResponse, MULTIPART_BATCH, compose_batch_request, content_type,
    is_application_http)

__all__ = ('BatchClient', 'BatchError', 'NonBatchResponseError', 'log')

log = logging.getLogger(__name__)


class NonBatchResponseError(BatchError):
    """An exception raised when the `BatchClient` receives a response
    with an HTTP status code other than 200."""
    def __init__(self, status, reason):
        self.status = status
        self.reason = reason
        super(NonBatchResponseError, self).__init__(
            'Received non-batch response: %d %s' %
            (self.status, self.reason)
        )


class Request(object):

    """A subrequest of a batched HTTP request.

    A batch request comprises one or more `Request` instances. Once the batch
    request is performed, the subresponses and their contents are dispatched
    to the callbacks of the associated `Request` instances.

    """

    def __init__(self, reqinfo, callback):
        """Initializes the `Request` instance with the given request and
        subresponse callback.

        Parameter `reqinfo` is the HTTP request to perform, specified as a
        mapping of keyword arguments suitable for passing to an
        `httplib2.Http.request()` call: a ``uri`` and optionally a
        ``method``, ``headers`` and ``body``.

        Parameter `callback` is the callable object to which to supply the
        subresponse once the batch request is performed. Callbacks should
        expect three positional parameters:

        * the URL of the original subrequest
        * an `httplib2.Response` representing the subresponse and its headers
        * the body of the subresponse, as bytes

        """
        self.reqinfo = reqinfo
        self.callback = callback

    def as_request(self, content_id):
        """Converts this `Request` instance into an
        `httpbatch.multipart.HTTPRequest` identified by `content_id`."""
        objreq = self.reqinfo
        headers = [(header, value) for header, value in (objreq.get('headers') or {}).items()
                   if header.lower() != 'accept-encoding']
        # Prevent compression as it's unlikely to survive batching.
        headers.append(('Accept-Encoding', 'identity'))

        body = objreq.get('body') or b''
        if isinstance(body, str):
            body = body.encode('utf-8')
        return HTTPRequest(str(content_id), objreq.get('method', 'GET'), objreq['uri'],
                           headers, body)

    def decode_response(self, subresponse):
        """Dispatches the given `httpbatch.multipart.HTTPResponse` to this
        `Request` instance's callback as an `httplib2.Response` and body."""
        info = {'status': str(subresponse.status)}
        for header, value in subresponse.headers:
            header = header.lower()
            if header == 'status':
                continue
            if header in info:
                info[header] = '%s, %s' % (info[header], value)
            else:
                info[header] = value
        # httplib2.Response lower cases the keys of a mapping itself.
        httpresponse = httplib2.Response(info)
        httpresponse.reason = subresponse.reason

        self.callback(self.reqinfo['uri'], httpresponse, subresponse.body)


class BatchRequest(object):

    """A collection of HTTP requests that should be performed in a batch as
    one request."""

    def __init__(self):
        self.requests = list()

    def __len__(self):
        """Returns the number of subrequests there are to perform."""
        return len(self.requests)

    def add(self, reqinfo, callback):
        """Adds a new `Request` instance to this `BatchRequest` instance.

        Parameters `reqinfo` and `callback` should be an HTTP request info
        mapping and a callable object, suitable for using to construct a new
        `Request` instance.

        """
        self.requests.append(Request(reqinfo, callback))

    def process(self, http, endpoint):
        """Performs a batch request.

        Parameter `http` is an `httplib2.Http` instance to use to perform the
        batch HTTP request. Parameter `endpoint` is the URL of the batch
        processor.

        If this `BatchRequest` instance contains no `Request` instances, no
        batch request will occur.

        """
        headers, body = self.construct()
        if headers and body:
            response, content = http.request(endpoint, body=body, method="POST", headers=headers)
            self.handle_response(response, content)

    def construct(self):
        """Builds a batch HTTP request from the `BatchRequest` instance's
        constituent subrequests.

        The batch request is returned as a tuple containing a mapping of HTTP
        headers and the bytes of the request body. Each subrequest is
        identified by its position in the batch, counting from 1.

        """
        if not len(self):
            log.warning('No requests were made for the batch')
            return None, None

        boundary = 'batch_%s' % uuid.uuid4().hex
        body = BytesIO()
        compose_batch_request(body, boundary, [request.as_request(request_id)
            for request_id, request in enumerate(self.requests, 1)])

        headers = {
            'Content-Type': content_type(boundary),
            'MIME-Version': '1.0',
            # lets prefer gzip encoding on the batch response
            'Accept-Encoding': 'gzip;q=1.0, identity; q=0.5, *;q=0',
        }
        return headers, body.getvalue()

    def handle_response(self, response, content):
        """Dispatches the subresponses contained in the given batch HTTP
        response to the associated callbacks.

        Parameters `response` and `content` are the `httplib2.Response`
        instance representing the batch HTTP response information and its
        associated content respectively.

        If the response is not a successful ``200 OK`` HTTP response, or the
        batch response content cannot be decoded into its constituent
        subresponses, a `BatchError` is raised.

        """
        # was the response okay?
        if response.status != 200:
            log.debug('Received non-batch response %d %s with content:\n%r'
                % (response.status, response.reason, content))
            raise NonBatchResponseError(response.status, response.reason)

        parser = email.feedparser.BytesFeedParser()
        parser.feed(('Content-Type: %s\r\n\r\n' % response.get('content-type', '')).encode('latin-1'))
        parser.feed(content)
        message = parser.close()

        if not message.is_multipart() or message.get_content_type() != MULTIPART_BATCH:
            log.debug('RESPONSE: %s', response)
            log.debug('CONTENT: %r', content)
            raise BatchError('Response was not a multipart/batch response set')

        for part in message.get_payload():
            if not is_application_http(str(part.get('Content-Type', ''))):
                raise BatchError('Batch response included a part that was not an HTTP response message')
            try:
                request_id = int(part['In-Reply-To'])
            except TypeError:
                raise BatchError('Batch response included a part with no In-Reply-To header')
            except ValueError:
                raise BatchError('Batch response included a part with an invalid In-Reply-To header')
            if not 0 < request_id <= len(self.requests):
                raise BatchError('Batch response included a part in reply to unknown request %d'
                    % request_id)

            try:
                subresponse = HTTPResponse.parse(part.get_payload(decode=True) or b'')
            except BadResponseException as exc:
                raise BatchError('Could not decode subresponse %d: %s' % (request_id, exc))
            self.requests[request_id - 1].decode_response(subresponse)


class BatchClient(httplib2.Http):

    """Sort of an HTTP client for performing a batch HTTP request."""

    def __init__(self, endpoint=None, **kwargs):
        """Configures the `BatchClient` instance to use the given batch
        processor endpoint.

        Parameter `endpoint` is the URL of the batch processor to which to
        submit batch requests. Other keyword arguments are passed on to
        `httplib2.Http`.

        """
        self.endpoint = endpoint
        super(BatchClient, self).__init__(**kwargs)

    def batch_request(self):
        """Opens a batch request.

        If a batch request is already open, a `BatchError` is raised.

        You can use this method with the ``with`` statement::

        >>> with client.batch_request():
        ...     client.batch({'uri': uri}, callback=handle_result)

        The batch request is then completed automatically at the end of the
        ``with`` block.

        """
        if hasattr(self, 'batchrequest'):
            # hey, we already have a request. this is invalid...
            log.debug('Batch request previously opened at:\n'
                + ''.join(traceback.format_list(self._opened)))
            log.debug('New now at:\n' + ''.join(traceback.format_stack()))
            raise BatchError("There's already an open batch request")
        self.batchrequest = BatchRequest()
        self._opened = traceback.extract_stack()

        # Return ourself so we can enter a "with" context.
        return self

    def complete_batch(self):
        """Closes a batch request, submitting it and dispatching the
        subresponses.

        If no batch request is open, a `BatchError` is raised.

        """
        if not hasattr(self, 'batchrequest'):
            raise BatchError("There's no open batch request to complete")
        if self.endpoint is None:
            raise BatchError("There's no batch processor endpoint to which to send a batch request")
        try:
            log.info('Making batch request for %d items', len(self.batchrequest))
            self.batchrequest.process(self, self.endpoint)
        finally:
            del self.batchrequest

    def clear_batch(self):
        """Closes a batch request without performing it."""
        try:
            del self.batchrequest
        except AttributeError:
            # well it's already cleared then isn't it
            pass

    def batch(self, reqinfo, callback):
        """Adds the given subrequest to the batch request.

        Parameter `reqinfo` is the HTTP request to perform, specified as a
        mapping of keyword arguments suitable for passing to an
        `httplib2.Http.request()` call.

        Parameter `callback` is the callable object to which to supply the
        subresponse once the batch request is performed.

        If no batch request is open, a `BatchError` is raised.

        """
        if not hasattr(self, 'batchrequest'):
            raise BatchError("There's no open batch request to add an object to")
        self.batchrequest.add(reqinfo, callback)

    def request(self, uri, method="GET", body=None, headers=None,
                redirections=httplib2.DEFAULT_MAX_REDIRECTS, connection_type=None):
        req_log = logging.getLogger('.'.join((__name__, 'request')))
        if req_log.isEnabledFor(logging.DEBUG):
            if headers is None:
                headeritems = ()
            else:
                headeritems = headers.items()
            req_log.debug('Making request:\n%s %s\n%s\n\n%r', method, uri,
                '\n'.join([
                    '%s: %s' % (k, v) for k, v in headeritems
                ]), body or b'')

        response, content = super(BatchClient, self).request(uri, method, body, headers,
                                                             redirections, connection_type)

        resp_log = logging.getLogger('.'.join((__name__, 'response')))
        if resp_log.isEnabledFor(logging.DEBUG):
            resp_log.debug('Got response:\n%s\n\n%r',
                '\n'.join([
                    '%s: %s' % (k, v) for k, v in response.items()
                ]), content)

        return response, content

    def __enter__(self):
        return self.batchrequest

    def __exit__(self, exc_type, exc_value, tb):
        if exc_type is not None:
            # Exception! Let's forget the whole thing.
            self.clear_batch()
        else:
            # Finished the context. Try to complete the request.
            self.complete_batch()

"""
A tiny Restify-like router used to exercise the web framework shim.

Handlers take ``(req, res, next)``; ``next()`` moves to the following handler and
``next(err)`` aborts with a 500. The response fires its ``finish`` listeners once the
server is done with the request.
"""
import asyncio
import re


class Request:
    def __init__(self, method, path, headers=None):
        self.method = method.upper()
        self.path = path
        self.headers = headers or {}
        self.params = {}
        self.route = None


class Response:
    def __init__(self):
        self.body = None
        self.status = None
        self._finish_listeners = []
        self._finished = False

    def on_finish(self, listener):
        self._finish_listeners.append(listener)

    def send(self, body, status=200):
        if self.status is None:
            self.body = body
            self.status = status

    @property
    def sent(self):
        return self.status is not None

    def finish(self):
        if self._finished:
            return
        self._finished = True
        for listener in list(self._finish_listeners):
            listener()


class Route:
    def __init__(self, method, pattern, handlers):
        self.method = method
        self.pattern = pattern
        self.handlers = list(handlers)
        regex = re.sub(r":(\w+)", r"(?P<\1>[^/]+)", pattern)
        self._regex = re.compile(f"^{regex}$")

    def match(self, path):
        match = self._regex.match(path)
        return match.groupdict() if match else None


def _flatten(handlers):
    flat = []
    for handler in handlers:
        if isinstance(handler, (list, tuple)):
            flat.extend(handler)
        else:
            flat.append(handler)
    return flat


class Server:
    def __init__(self):
        self.middleware = []
        self.routes = []

    def use(self, *handlers):
        self.middleware.extend(_flatten(handlers))
        return self

    def get(self, pattern, *handlers):
        self.routes.append(Route("GET", pattern, _flatten(handlers)))
        return self

    def post(self, pattern, *handlers):
        self.routes.append(Route("POST", pattern, _flatten(handlers)))
        return self

    def _find_route(self, request):
        for route in self.routes:
            if route.method != request.method:
                continue
            params = route.match(request.path)
            if params is not None:
                return route, params
        return None, None

    def handle(self, request, response):
        chain = list(self.middleware)
        route, params = self._find_route(request)
        if route is not None:
            request.params = params
            request.route = route.pattern
            chain.extend(route.handlers)
        else:
            chain.append(self._not_found)
        self._run(chain, 0, request, response)
        response.finish()
        return response

    def _run(self, chain, index, request, response):
        if index >= len(chain) or response.sent:
            return

        def next_handler(err=None):
            if err is not None:
                response.send(str(err), 500)
                return
            self._run(chain, index + 1, request, response)

        chain[index](request, response, next_handler)

    @staticmethod
    def _not_found(req, res, next):
        res.send("not found", 404)


class AsyncServer:
    """Coroutine handlers ``(req, res)``, run in order until one sends a response."""

    def __init__(self):
        self.middleware = []
        self.routes = []

    def use(self, *handlers):
        self.middleware.extend(handlers)

    def get(self, pattern, *handlers):
        self.routes.append(Route("GET", pattern, handlers))

    async def handle(self, request, response):
        chain = list(self.middleware)
        for route in self.routes:
            params = route.match(request.path) if route.method == request.method else None
            if params is not None:
                request.params = params
                request.route = route.pattern
                chain.extend(route.handlers)
                break
        for handler in chain:
            await handler(request, response)
            if response.sent:
                break
        await asyncio.sleep(0)
        return response


def render(template, context=None):
    return f"<{template}>{context or {}}</{template}>"

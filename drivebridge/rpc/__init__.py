"""
RPC client and server for Python classes based on ZeroMQ and MessagePack.

drivebridge talks to the storage service through RPC so that the protocol specific
client (login, key derivation, token refresh, block transfers) can live in its own
process and the bridge only depends on a small set of calls like login(), stat() and
read(). The requirements are the following:

* Little boilerplate to expose a service class
    * Services are plain classes and every public method is exposed.
* Multithreading support
    * WebDAV requests are handled by a pool of threads that all make calls.
    * On the server side calls are distributed across multiple workers.
* Automatic serialization and deserialization of dataclasses based on type annotations
* Faithful recreation of exceptions
    * Builtin exceptions like FileNotFoundError and PermissionError, as well as any
    exception types registered with the encoding, are raised as-is on the client.
* Calls that time out never poison the connection
    * A REQ socket that timed out is discarded because it is stuck waiting for a
    reply. This matters for availability checks that are retried until the service
    comes up.
* Servers can be stopped
    * `drivebridge --serve-local` stops its service cleanly when interrupted.

MessagePack supports fast and compact serialization, also of binary file contents.
ZeroMQ takes care of connection handling and reconnects with its DEALER/ROUTER and
REQUEST/REPLY patterns.
"""

from abc import ABC
import builtins
from dataclasses import is_dataclass
from enum import auto, Enum
import logging
import threading
import time
import typing
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import msgpack
import zmq

from drivebridge.logger import log, summarize


class Encoding:
    """
    Serialization and deserialization of objects using MessagePack.

    Dataclasses are sent as their fields and exceptions as their type name and
    arguments, so that both sides can recreate them.
    """

    def __init__(self, *dataclasses: type, exceptions: Iterable[type] = ()):
        """
        Initialize a (de)serializer with support for the given dataclass types.

        The given exception types are recreated faithfully on deserialization, in
        addition to builtin exceptions.
        """
        self._dataclasses: Dict[str, type] = {}
        self._exceptions: Dict[str, type] = {}

        for dataclass in dataclasses:
            self.register_dataclasses(dataclass)

        for exception in exceptions:
            self.register_exception(exception)

    def register_dataclasses(self, seed_type: type) -> None:
        """
        Register all dataclass types used within the specified type.

        This includes the class itself, its class members, nested dataclasses, and
        container types like List and Optional.
        """
        for dataclass in self._discover_dataclasses(seed_type):
            self._dataclasses[dataclass.__qualname__] = dataclass

    def register_exception(self, exception_type: type) -> None:
        """Register an exception type to be recreated faithfully."""
        self._exceptions[exception_type.__qualname__] = exception_type

    def pack(self, obj: Any) -> bytes:
        """Serialize an object using MessagePack."""
        return msgpack.packb(obj, default=self.serialize_obj)

    def unpack(self, data: bytes) -> Any:
        """Deserialize an object using MessagePack."""
        return msgpack.unpackb(data, object_hook=self.deserialize_obj)

    def serialize_obj(self, obj: Any) -> Any:
        """Turn a dataclass or object into a serialization friendly representation."""
        if isinstance(obj, BaseException):
            return self._serialize_exception(obj)
        elif obj.__class__.__qualname__ in self._dataclasses:
            return self._serialize_dataclass(obj)
        else:
            raise ValueError(f"unserializable object {obj}")

    def deserialize_obj(self, obj: Any) -> Any:
        """Reconstruct a dataclass or exception from a serialized representation."""
        if isinstance(obj, dict) and "__exception__" in obj:
            return self._deserialize_exception(obj)
        elif isinstance(obj, dict) and "__data__" in obj:
            return self._deserialize_dataclass(obj)
        else:
            return obj

    #
    # Exception serialization
    #

    @staticmethod
    def _serialize_exception(exc: BaseException) -> Dict:
        """Turn an exception into a serialization friendly dict."""
        args = [
            arg if isinstance(arg, (str, int, float)) else str(arg) for arg in exc.args
        ]

        return {"__exception__": {"name": exc.__class__.__qualname__, "args": args}}

    def _deserialize_exception(self, obj: Dict) -> BaseException:
        """
        Reconstruct an exception from its serialized representation.

        Builtin exceptions (like IOError) and registered exception types are
        reconstructed faithfully, anything else as a generic Exception with the
        original arguments.
        """
        name = obj["__exception__"]["name"]
        args = obj["__exception__"]["args"]

        if name in self._exceptions:
            return self._exceptions[name](*args)

        builtin_exc = getattr(builtins, name, None.__class__)

        if isinstance(builtin_exc, type) and issubclass(builtin_exc, BaseException):
            return builtin_exc(*args)
        else:
            return Exception(*args)

    #
    # Data class serialization
    #

    @classmethod
    def _serialize_dataclass(cls, obj: Any) -> Dict:
        """Turn a dataclass into a serialization friendly dict."""
        return {"__data__": {"type": obj.__class__.__qualname__, "data": obj.__dict__}}

    def _deserialize_dataclass(self, obj: Dict) -> Any:
        """
        Reconstruct a dataclass from its serialized representation.

        Only previously registered dataclass types can be deserialized.
        """
        type_name = obj["__data__"]["type"]
        type_data = obj["__data__"]["data"]

        if type_name in self._dataclasses:
            try:
                return self._dataclasses[type_name](**type_data)
            except Exception as e:
                raise TypeError(f"failed to deserialize {type_name}: {e}")
        else:
            raise TypeError(f"unknown dataclass '{type_name}'")

    @staticmethod
    def _discover_dataclasses(*seed_types: type) -> List[type]:
        """
        Find all dataclass types used with the specified type.

        This includes the class itself, its class members, nested dataclasses, and
        container types like List and Optional.
        """
        candidates = set(seed_types)
        explored = set()
        dataclasses = set()

        while len(candidates) > 0:
            candidate = candidates.pop()

            if candidate not in explored:
                explored.add(candidate)
            else:
                continue

            if is_dataclass(candidate):
                dataclasses.add(candidate)

                # Discover member types of dataclass
                for subtype in typing.get_type_hints(candidate).values():
                    candidates.add(subtype)
            else:
                # Discover types nested in constructs like Optional[T] and List[T]
                for subtype in typing.get_args(candidate):
                    candidates.add(subtype)

        return list(dataclasses)


class ReturnType(Enum):
    """Type of result for an RPC call."""

    NORMAL = auto()
    EXCEPTION = auto()
    TOKEN_ERROR = auto()


class InvalidTokenError(RuntimeError):
    """Exception raised when an RPC call is made with a wrong authentication token."""


class Base(ABC):
    """Shared logic between RPC client and server implementation."""

    def __init__(self, service_type: type, exceptions: Iterable[type] = ()):
        """Initialize RPC (de)serialization to support the specified service class."""
        function_types = self._discover_function_types(service_type)
        self._encoding = Encoding(*function_types, exceptions=exceptions)

    @staticmethod
    def _discover_function_types(service_type: type) -> List[type]:
        """Discover all types used as parameters or return values in the RPC service."""
        exposed_functions = [
            getattr(service_type, name)
            for name in dir(service_type)
            if not name.startswith("_") and callable(getattr(service_type, name))
        ]

        function_types: List[type] = []

        for func in exposed_functions:
            function_types += typing.get_type_hints(func).values()

        return function_types


class Server(Base):
    """
    RPC server to expose a service defined through members of a class instance.

    Example:
    ```
    class Foo:
        def bar(a, b):
            return a + b

    server = rpc.Server(Foo())
    server.serve("tcp://0.0.0.0:1234")
    ```
    """

    # Interval at which idle workers check if the server is stopping
    POLL_INTERVAL_MS = 100

    def __init__(
        self,
        service: Any,
        token: Optional[str] = None,
        worker_count: int = 1,
        exceptions: Iterable[type] = (),
    ):
        """
        Instantiate an RPC server for the given service class instance.

        The server will expose all public methods in the class to clients. If a token
        is specified then clients will need to be initialized with that same token to
        be allowed to make calls. Incoming calls will be distributed across the
        specified number of worker threads.
        """
        super().__init__(service.__class__, exceptions)

        self.context = zmq.Context()

        self.service = service
        self.token = token
        self.worker_count = worker_count

        self.endpoint: Optional[str] = None

        self._ready = threading.Event()
        self._stopping = threading.Event()

    def serve(self, endpoint: str) -> None:
        """
        Start listening and handling calls for clients on the specified endpoint.

        The endpoint should have the format of endpoint in zmq_bind
        (http://api.zeromq.org/2-1:zmq-bind), for example "tcp://0.0.0.0:1234" or
        "tcp://127.0.0.1:*" for a random port. Blocks until stop() is called.
        """
        socket = self.context.socket(zmq.ROUTER)
        socket.setsockopt(zmq.LINGER, 0)
        socket.bind(endpoint)

        self.endpoint = socket.getsockopt_string(zmq.LAST_ENDPOINT)

        workers_socket = self.context.socket(zmq.DEALER)
        workers_socket.setsockopt(zmq.LINGER, 0)
        workers_socket.bind(f"inproc://{id(self)}")

        control_socket = self.context.socket(zmq.PAIR)
        control_socket.bind(f"inproc://{id(self)}-control")

        workers = [
            threading.Thread(target=self._run_worker, daemon=True)
            for _ in range(self.worker_count)
        ]

        for t in workers:
            t.start()

        self._ready.set()

        try:
            zmq.proxy_steerable(socket, workers_socket, None, control_socket)
        finally:
            self._stopping.set()

            for t in workers:
                t.join()

            socket.close()
            workers_socket.close()
            control_socket.close()

            self.context.term()

    def wait_ready(self, timeout: Optional[float] = None) -> bool:
        """Wait until the server is listening on its endpoint."""
        return self._ready.wait(timeout)

    def stop(self) -> None:
        """Stop serving calls and release the endpoint."""
        if not self._ready.is_set() or self._stopping.is_set():
            return

        control_socket = self.context.socket(zmq.PAIR)
        control_socket.connect(f"inproc://{id(self)}-control")
        control_socket.send(b"TERMINATE")
        control_socket.close()

    def _run_worker(self) -> None:
        """Request/response loop to handle calls for a single worker thread."""
        socket = self.context.socket(zmq.REP)
        socket.setsockopt(zmq.LINGER, 0)
        socket.connect(f"inproc://{id(self)}")

        try:
            while not self._stopping.is_set():
                if socket.poll(self.POLL_INTERVAL_MS) == 0:
                    continue

                # Wait for a call to come in
                token, function, *args = self._encoding.unpack(socket.recv())

                if token != self.token:
                    # Authentication token mismatch between client/server
                    socket.send(
                        self._encoding.pack((ReturnType.TOKEN_ERROR.value, None))
                    )
                    continue

                # Invoke the method and return the response (value/raised exception)
                try:
                    if function is None:
                        ret = None
                    elif function.startswith("_"):
                        raise AttributeError(f"'{function}' is not exposed")
                    else:
                        ret = getattr(self.service, function)(*args)

                    socket.send(self._encoding.pack((ReturnType.NORMAL.value, ret)))
                except Exception as e:
                    socket.send(self._encoding.pack((ReturnType.EXCEPTION.value, e)))
        finally:
            socket.close()


class Client(Base):
    """
    RPC client to invoke methods on a service instance exposed by an RPC server.

    A single client can be used by multiple threads and will internally create multiple
    socket connections as needed.

    Example:
    ```
    foo = rpc.Client(Foo, "tcp://localhost:1234")
    c = foo.bar(1, 2)
    ```
    """

    def __init__(
        self,
        service_type: type,
        endpoint: str,
        token: Optional[str] = None,
        timeout_ms: int = -1,
        exceptions: Iterable[type] = (),
    ) -> None:
        """
        Instantiate an RPC client for the service type at the given endpoint.

        The endpoint should follow the format of endpoint in zmq_connect
        (http://api.zeromq.org/3-2:zmq-connect), for example "tcp://localhost:1234".
        """
        super().__init__(service_type, exceptions)

        self.endpoint = endpoint
        self.token = token
        self.timeout_ms = timeout_ms

        self.context = zmq.Context()

        self._socket_pool: Dict[threading.Thread, zmq.Socket] = {}
        self._socket_pool_lock = threading.Lock()

    def _socket(self, timeout_ms: Optional[int] = None) -> zmq.Socket:
        """
        Return a socket to be used for the current thread.

        Each thread needs its own socket because REQUEST-REPLY need to happen in
        lockstep per socket. The (initial) timeout is set to the constructor specified
        timeout, but can be overridden.
        """
        if timeout_ms is None:
            timeout_ms = self.timeout_ms

        t = threading.current_thread()

        with self._socket_pool_lock:
            if t not in self._socket_pool:
                sock = self.context.socket(zmq.REQ)

                sock.setsockopt(zmq.RCVTIMEO, timeout_ms)
                sock.setsockopt(zmq.SNDTIMEO, timeout_ms)
                sock.setsockopt(zmq.LINGER, 0)

                sock.connect(self.endpoint)

                self._socket_pool[t] = sock

            return self._socket_pool[t]

    def _discard_socket(self) -> None:
        """Close the socket of the current thread after it got out of lockstep."""
        with self._socket_pool_lock:
            sock = self._socket_pool.pop(threading.current_thread(), None)

        if sock is not None:
            sock.close(linger=0)

    def ping(self, timeout_ms: Optional[int] = None) -> None:
        """
        Check if the service is available.

        The check will use the timeout from the constructor by default, but this timeout
        can be overridden using the parameter.
        """
        sock = self._socket(timeout_ms)

        # Temporarily override timeout
        if timeout_ms is not None:
            sock.setsockopt(zmq.RCVTIMEO, timeout_ms)
            sock.setsockopt(zmq.SNDTIMEO, timeout_ms)

        try:
            self._call(None)
        finally:
            # Restore to the constructor timeout if the socket survived the call
            with self._socket_pool_lock:
                alive = self._socket_pool.get(threading.current_thread()) is sock

            if timeout_ms is not None and alive:
                sock.setsockopt(zmq.RCVTIMEO, self.timeout_ms)
                sock.setsockopt(zmq.SNDTIMEO, self.timeout_ms)

    def close(self) -> None:
        """Close the client sockets and their ZeroMQ context."""
        with self._socket_pool_lock:
            for sock in self._socket_pool.values():
                sock.close(linger=0)

            self._socket_pool.clear()

        self.context.destroy(linger=0)

    def __del__(self) -> None:
        """Release sockets of a client that wasn't closed explicitly."""
        context = self.__dict__.get("context")

        if context is not None and not context.closed:
            self.close()

    @property
    def socket_count(self) -> int:
        """Return the number of sockets for this client."""
        with self._socket_pool_lock:
            return len(self._socket_pool)

    @staticmethod
    def _summarize_args(args: tuple) -> Tuple[str, ...]:
        """Summarize a tuple of function arguments."""
        return tuple([summarize(arg) for arg in args])

    def _call(self, name: Optional[str], *args: Any) -> Any:
        """
        Call remote function with the given arguments.

        Serializes the arguments, makes the call and deserializes the resulting return
        value or raises the resulting exception.

        ZeroMQ connections are stateless so the token is sent again with every call.
        """
        sock = self._socket()

        t_call = time.time()

        # Serialize arguments and invoke remote function, then wait for the answer
        # (return value, exception, token error, or RPC error)
        try:
            sock.send(self._encoding.pack((self.token, name, *args)))
            typ, *ret = self._encoding.unpack(sock.recv())
        except zmq.ZMQError:
            self._discard_socket()
            raise IOError("rpc call timed out")

        t_return = time.time()

        # Explicit check before logging because _summarize_args is relatively slow
        if log.isEnabledFor(logging.DEBUG):
            t_millis = round((t_return - t_call) * 1000)
            log.debug(f"rpc::{name}{self._summarize_args(args)} - {t_millis} ms")

        if typ == ReturnType.NORMAL.value:
            if len(ret) == 1:
                return ret[0]
            else:
                return ret
        elif typ == ReturnType.EXCEPTION.value:
            raise ret[0]
        elif typ == ReturnType.TOKEN_ERROR.value:
            raise InvalidTokenError("token mismatch between client and server")
        else:
            raise ValueError(f"unexpected return type {typ}")

    def __getattr__(self, name: str) -> Callable[..., Any]:
        """Retrieve a wrapper to call the specified remote function."""
        if name.startswith("_"):
            raise AttributeError(name)

        def fn(*args: Any) -> Any:
            return self._call(name, *args)

        return fn

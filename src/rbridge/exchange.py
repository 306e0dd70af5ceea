"""Typed value transfers coordinated across the text and data channels."""

from __future__ import annotations

from rbridge.engine.channel import BinaryChannel, SocketStream, TextChannel
from rbridge.protocol import snippets
from rbridge.protocol.codec import TaggedValue, WireCodec


class DataExchange:
    """Tell the engine what to do with the data socket, then move the bytes."""

    def __init__(self, engine: TextChannel, channel: BinaryChannel, codec: WireCodec) -> None:
        self._engine = engine
        self._channel = channel
        self._codec = codec

    def send_value(self, fun: str, value: TaggedValue) -> None:
        """Call the engine-side function ``fun`` with ``value`` read off the socket."""

        def _send(stream: SocketStream) -> None:
            self._command(snippets.assign_call(fun))
            self._codec.write(value, stream)

        self._channel.with_session(_send)

    def fetch_value(self, expr: str) -> TaggedValue:
        """Evaluate ``expr`` in the engine and read back its serialized value."""

        def _fetch(stream: SocketStream) -> TaggedValue:
            self._command(snippets.pull_call(expr))
            return self._codec.read(stream)

        return self._channel.with_session(_fetch)

    def query_status(self, statement: str) -> int:
        """Run ``statement``, which answers with one int32 on the socket."""

        def _query(stream: SocketStream) -> int:
            self._command(statement)
            return self._codec.read_int(stream)

        return self._channel.with_session(_query)

    def _command(self, statement: str) -> None:
        self._engine.write_line(statement)
        self._engine.flush()

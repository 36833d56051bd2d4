"""
Stream normalization shared by every provider.

Providers hand over their SDK-specific async chunk source together with a
small extractor; everything here only ever deals with text fragments:

- relay_fragments() turns a chunk source into a raw UTF-8 byte stream
- format_stream_as_sse() frames a raw byte stream as server-sent events
- process_streamed_response() decodes an SSE body back into callbacks
- process_raw_response() does the same for a raw fragment body
"""

import asyncio
import codecs
import inspect
import json
import logging
from enum import Enum
from typing import Any, AsyncIterable, AsyncIterator, Awaitable, Callable, Optional

from storyai.core.cancel import CancelToken
from storyai.core.errors import GenerationCancelled, TransportError

logger = logging.getLogger(__name__)

SSE_PREFIX = "data: "
SSE_DONE = "[DONE]"
SSE_DONE_RECORD = f"{SSE_PREFIX}{SSE_DONE}\n\n".encode("utf-8")

ChunkSource = AsyncIterable[Any]
SourceOpener = Callable[[], Awaitable[ChunkSource]]
TextExtractor = Callable[[Any], Optional[str]]

_END = object()


# terminal states of one decode pass; reading never retries
class StreamState(Enum):
    COMPLETED = "completed"
    ERRORED = "errored"


def _field(obj: Any, name: str) -> Any:
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


# choices[0].delta.content of a chat-completions chunk, SDK object or plain dict
def openai_delta_text(chunk: Any) -> Optional[str]:
    choices = _field(chunk, "choices")
    if not choices:
        return None
    delta = _field(choices[0], "delta")
    if delta is None:
        return None
    content = _field(delta, "content")
    if isinstance(content, str) and content:
        return content
    return None


# Gemini yields whole GenerateContentResponse objects; .text is the increment
def gemini_chunk_text(chunk: Any) -> Optional[str]:
    text = getattr(chunk, "text", None)
    if isinstance(text, str) and text:
        return text
    return None


async def close_source(source: Any) -> None:
    closer = getattr(source, "aclose", None) or getattr(source, "close", None)
    if closer is None:
        return
    result = closer()
    if inspect.isawaitable(result):
        await result


async def _stop(task: "asyncio.Future[Any]") -> None:
    if not task.done():
        task.cancel()
    await asyncio.gather(task, return_exceptions=True)


async def relay_fragments(
    open_source: SourceOpener,
    extract_text: TextExtractor,
    cancel_token: CancelToken,
) -> AsyncIterator[bytes]:
    """
    Open a provider stream and relay its fragments as UTF-8 bytes.

    The source is opened and iterated inside one producer task so that the
    transport's context managers enter and exit in the same task. Returns
    once the source is open:
    - GenerationCancelled if the token fired before that
    - whatever open_source() raised if opening failed
    The returned iterator raises TransportError when the source fails
    mid-stream and GenerationCancelled when the token fires while reading.
    """
    loop = asyncio.get_running_loop()
    opened: "asyncio.Future[None]" = loop.create_future()
    queue: "asyncio.Queue[Any]" = asyncio.Queue(maxsize=1)

    async def produce() -> None:
        try:
            source = await open_source()
        except Exception as exc:
            if not opened.done():
                opened.set_exception(exc)
            return
        if not opened.done():
            opened.set_result(None)
        try:
            async for chunk in source:
                text = extract_text(chunk)
                if text:
                    await queue.put(text.encode("utf-8"))
        except Exception as exc:
            await queue.put(exc)
        else:
            await queue.put(_END)
        finally:
            await close_source(source)

    producer = asyncio.ensure_future(produce())
    cancel_token.on_cancel(producer.cancel)
    try:
        await cancel_token.run(opened)
    except BaseException:
        await _stop(producer)
        raise
    return _drain(queue, producer, cancel_token)


async def _drain(
    queue: "asyncio.Queue[Any]",
    producer: "asyncio.Future[None]",
    cancel_token: CancelToken,
) -> AsyncIterator[bytes]:
    try:
        while True:
            item = await cancel_token.run(queue.get())
            if item is _END:
                return
            if isinstance(item, TransportError):
                raise item
            if isinstance(item, BaseException):
                raise TransportError(f"stream interrupted: {item}") from item
            yield item
    finally:
        await _stop(producer)


async def format_stream_as_sse(raw: AsyncIterable[bytes]) -> AsyncIterator[bytes]:
    """
    Frame a raw fragment stream as SSE records, ending with one [DONE] record.

    Fragment text is written as is. A fragment containing a blank line is
    split into separate records by any SSE reader, and text after a single
    newline inside a fragment lands on a line without the `data: ` prefix,
    which readers drop.
    """
    decoder = codecs.getincrementaldecoder("utf-8")()
    try:
        async for chunk in raw:
            text = decoder.decode(chunk)
            if text:
                yield f"{SSE_PREFIX}{text}\n\n".encode("utf-8")
    except GenerationCancelled:
        logger.info("sse relay aborted, closing stream")
        return
    finally:
        await close_source(raw)
    tail = decoder.decode(b"", final=True)
    if tail:
        yield f"{SSE_PREFIX}{tail}\n\n".encode("utf-8")
    yield SSE_DONE_RECORD


def _payload_token(payload: str) -> Optional[str]:
    try:
        data = json.loads(payload)
    except ValueError:
        # plain fragment record written by format_stream_as_sse
        return payload
    # only chat-completion chunks are unwrapped; any other JSON is fragment text
    if isinstance(data, dict) and "choices" in data:
        return openai_delta_text(data)
    return payload


async def process_streamed_response(
    body: AsyncIterable[bytes],
    on_token: Callable[[str], None],
    on_complete: Callable[[], None],
    on_error: Callable[[Exception], None],
) -> StreamState:
    """
    Decode an SSE body, firing on_token per fragment and then exactly one of
    on_complete / on_error. Cancellation counts as completion. No retries.
    """
    decoder = codecs.getincrementaldecoder("utf-8")()
    pending = ""
    failure: Optional[Exception] = None

    # True once [DONE] was seen
    def handle_line(line: str) -> bool:
        if not line.startswith(SSE_PREFIX):
            return False
        payload = line[len(SSE_PREFIX):]
        if payload == SSE_DONE:
            return True
        token = _payload_token(payload)
        if token:
            on_token(token)
        return False

    async def read() -> None:
        nonlocal pending
        async for chunk in body:
            pending += decoder.decode(chunk)
            *lines, pending = pending.split("\n")
            for line in lines:
                if handle_line(line):
                    return
        pending += decoder.decode(b"", final=True)
        for line in pending.split("\n"):
            if handle_line(line):
                return

    try:
        await read()
    except GenerationCancelled:
        logger.info("stream aborted while reading, treating as complete")
    except Exception as exc:
        logger.error("stream read failed: %s", exc)
        failure = exc
    finally:
        await close_source(body)

    if failure is not None:
        on_error(failure)
        return StreamState.ERRORED
    on_complete()
    return StreamState.COMPLETED


async def process_raw_response(
    body: AsyncIterable[bytes],
    on_token: Callable[[str], None],
    on_complete: Callable[[], None],
    on_error: Callable[[Exception], None],
) -> StreamState:
    """Raw fragment counterpart of process_streamed_response(); same callback rules."""
    decoder = codecs.getincrementaldecoder("utf-8")()
    failure: Optional[Exception] = None

    try:
        async for chunk in body:
            text = decoder.decode(chunk)
            if text:
                on_token(text)
        tail = decoder.decode(b"", final=True)
        if tail:
            on_token(tail)
    except GenerationCancelled:
        logger.info("raw stream aborted while reading, treating as complete")
    except Exception as exc:
        logger.error("raw stream read failed: %s", exc)
        failure = exc
    finally:
        await close_source(body)

    if failure is not None:
        on_error(failure)
        return StreamState.ERRORED
    on_complete()
    return StreamState.COMPLETED

import os
import sys
import asyncio

from pathlib import Path
from loguru import logger
from argparse import ArgumentParser

import aiofiles
from tqdm import tqdm

from src.setup.config import extraction_config
from src.setup.paths import LOGS_DIR, make_fundamental_paths
from src.extraction.sinks import ArchiveSink, WriteTarget, ZipFileSink


def settle(completion: asyncio.Future[None], error: BaseException | None = None) -> None:
    """Fulfil (or fail) the completion signal, unless that has already happened."""
    if completion.done():
        return

    if error is None:
        completion.set_result(None)
    else:
        completion.set_exception(error)


class ZipExtractor:
    def __init__(
        self,
        sink: ArchiveSink | None = None,
        chunk_size: int = extraction_config.chunk_size,
        queue_size: int = extraction_config.queue_size,
        wait_for_sink: bool = extraction_config.wait_for_sink,
        show_progress: bool = extraction_config.show_progress
    ) -> None:
        """
        Pipes zip archives from disk into an archive sink, one chunk at a time. Reading and extraction run
        as two tasks that hand chunks to each other through a bounded queue, so the reader waits whenever
        the sink falls behind.

        By default, the completion signal of each run is tied to the closing of the source file, and not
        to the sink. The sink may therefore still be writing entries (or may still fail) after the signal
        has fired. Use drain() to wait for the sinks, or set wait_for_sink to have the signal follow
        the sink instead.

        Args:
            sink: the sink that receives the bytes of each archive. Defaults to a ZipFileSink.
            chunk_size: the number of bytes read from the source at a time.
            queue_size: the number of chunks that may wait between the reader and the sink.
            wait_for_sink: whether the completion signal should wait for the sink to finish.
            show_progress: whether to display a progress bar while the source is being read.
        """
        self.sink: ArchiveSink = sink if sink is not None else ZipFileSink()
        self.chunk_size: int = chunk_size
        self.queue_size: int = queue_size
        self.wait_for_sink: bool = wait_for_sink
        self.show_progress: bool = show_progress

        self.readers: set[asyncio.Task[None]] = set()
        self.pending: set[asyncio.Task[None]] = set()
        self.failures: list[Exception] = []

    def run(self, source_path: str | Path, dest_path: str | Path) -> asyncio.Future[None]:
        """
        Start extracting the archive at source_path into dest_path. This must be called from within a
        running event loop, and it returns immediately.

        Args:
            source_path: the path to the zipfile.
            dest_path: the directory that the contents of the zipfile will be written into.

        Returns:
            asyncio.Future[None]: the completion signal. It is fulfilled once, with None, when the source
                                  has been read and closed. If the source could not be opened or read, it
                                  carries the error instead.
        """
        source_path, dest_path = Path(source_path), Path(dest_path)
        loop = asyncio.get_running_loop()
        completion: asyncio.Future[None] = loop.create_future()
        queue: asyncio.Queue[bytes | None] = asyncio.Queue(maxsize=self.queue_size)

        logger.info(f"Piping {source_path} into {dest_path}")

        writer = loop.create_task(self.write(dest_path=dest_path, queue=queue))
        self.pending.add(writer)
        writer.add_done_callback(
            lambda task: self.on_sink_done(task=task, completion=completion, dest_path=dest_path)
        )

        reader = loop.create_task(
            self.read(source_path=source_path, queue=queue, completion=completion, writer=writer)
        )
        self.readers.add(reader)
        reader.add_done_callback(self.readers.discard)
        return completion

    async def read(
        self,
        source_path: Path,
        queue: asyncio.Queue[bytes | None],
        completion: asyncio.Future[None],
        writer: asyncio.Task[None]
    ) -> None:
        try:
            async with aiofiles.open(source_path, mode="rb") as stream:
                total_size: int = source_path.stat().st_size

                with tqdm(
                    total=total_size, unit="B", unit_scale=True, desc=f"Reading {source_path.name}", disable=not self.show_progress
                ) as bar:
                    while chunk := await stream.read(self.chunk_size):
                        if not await self.feed(queue=queue, item=chunk, writer=writer):
                            logger.warning(f"Nothing is listening for the rest of {source_path} anymore")
                            break
                        bar.update(len(chunk))

                await self.feed(queue=queue, item=None, writer=writer)  # End of stream

        except asyncio.CancelledError:
            writer.cancel()
            completion.cancel()
            raise

        except Exception as error:
            logger.error(f"Could not read {source_path}: {error}")
            writer.cancel()
            settle(completion, error=error)
            return

        logger.success(f"Closed {source_path}")
        if not self.wait_for_sink:
            settle(completion)

    @staticmethod
    async def feed(queue: asyncio.Queue[bytes | None], item: bytes | None, writer: asyncio.Task[None]) -> bool:
        """
        Hand an item to the writer, waiting for room on the queue for as long as the writer is alive.

        Returns:
            bool: False if the writer has stopped, in which case the item was not queued.
        """
        if writer.done():
            return False

        if not queue.full():
            queue.put_nowait(item)
            return True

        put = asyncio.ensure_future(queue.put(item))
        try:
            await asyncio.wait({put, writer}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            put.cancel()
            raise

        if put.done():
            return True

        put.cancel()
        return False

    async def write(self, dest_path: Path, queue: asyncio.Queue[bytes | None]) -> None:
        """
        Feed every chunk on the queue to a target opened on dest_path. When the sink fails, the rest of the
        stream is still taken off the queue (and dropped) so that the reader can run to the end of the file.
        """
        try:
            target: WriteTarget = self.sink.open(dest_path)
        except Exception:
            await self.discard(queue)
            raise

        in_flight: asyncio.Future[None] | None = None
        try:
            while (chunk := await queue.get()) is not None:
                # Waiting on the write through asyncio.wait leaves it running if this task is cancelled
                in_flight = asyncio.ensure_future(asyncio.to_thread(target.write, chunk))
                await asyncio.wait({in_flight})
                in_flight.result()

        except asyncio.CancelledError:
            if in_flight is not None and not in_flight.done():
                await asyncio.wait({in_flight})
                if in_flight.exception() is not None:
                    logger.error(f"Write into {dest_path} failed while cancelling: {in_flight.exception()!r}")
            self.abort(target=target, dest_path=dest_path)
            raise

        except Exception:
            self.abort(target=target, dest_path=dest_path)
            await self.discard(queue)
            raise

        await asyncio.to_thread(target.close)

    @staticmethod
    def abort(target: WriteTarget, dest_path: Path) -> None:
        try:
            target.abort()
        except Exception as error:
            logger.error(f"Could not abort the extraction into {dest_path}: {error!r}")

    @staticmethod
    async def discard(queue: asyncio.Queue[bytes | None]) -> None:
        while await queue.get() is not None:
            pass

    def on_sink_done(self, task: asyncio.Task[None], completion: asyncio.Future[None], dest_path: Path) -> None:
        self.pending.discard(task)
        if task.cancelled():
            if self.wait_for_sink:
                completion.cancel()
            return

        error = task.exception()
        if error is None:
            if self.wait_for_sink:
                settle(completion)
            return

        logger.error(f"Extraction into {dest_path} failed: {error!r}")
        if self.wait_for_sink:
            settle(completion, error=error)
        else:
            self.failures.append(error)

    async def drain(self) -> list[Exception]:
        """
        Wait for every sink that is still extracting.

        Returns:
            list[Exception]: the errors raised by sinks since the last drain, which have not already been
                             delivered through a completion signal.
        """
        while self.pending:
            await asyncio.wait(list(self.pending))

        failures, self.failures = self.failures, []
        return failures


default_extractor = ZipExtractor()


def extract(
    source_path: str | Path,
    dest_path: str | Path,
    extractor: ZipExtractor | None = None
) -> asyncio.Future[None]:
    """
    Extract the zipfile at source_path into dest_path without blocking the event loop.

    Args:
        source_path: the path to the zipfile
        dest_path: the directory to extract into. It is created if it does not exist.
        extractor: the extractor to use. The module's default extractor is used if none is provided.

    Returns:
        asyncio.Future[None]: a signal that fires once the zipfile has been read and closed.

    Sink failures that happen after the signal are kept on the extractor until drain() is called, so callers
    that never drain the default extractor keep every such error around.
    """
    extractor = extractor if extractor is not None else default_extractor
    return extractor.run(source_path=source_path, dest_path=dest_path)


async def drain() -> list[Exception]:
    return await default_extractor.drain()


def run(
    source_path: str | Path,
    dest_path: str | Path,
    keep_zipfile: bool = extraction_config.keep_zipfile,
    wait_for_sink: bool = extraction_config.wait_for_sink,
    show_progress: bool = extraction_config.show_progress
) -> None:
    """
    Extract the zipfile and block until its contents are on disk.

    Args:
        source_path: the path to the zipfile
        dest_path: the directory to extract into.
        keep_zipfile: whether to keep the zipfile after extraction
        wait_for_sink: whether the completion signal itself should wait for the sink.
        show_progress: whether to show a progress bar while reading.

    Raises:
        OSError: if the zipfile could not be read, or its contents could not be written.
        zipfile.BadZipFile: if the file is not a valid zipfile.
        UnsafeMemberError: if a member of the archive would escape dest_path.
    """
    extractor = ZipExtractor(wait_for_sink=wait_for_sink, show_progress=show_progress)

    async def extract_and_settle() -> list[Exception]:
        await extractor.run(source_path=source_path, dest_path=dest_path)
        return await extractor.drain()

    failures = asyncio.run(extract_and_settle())
    if failures:
        raise failures[0]

    if not keep_zipfile:
        os.remove(source_path)
        logger.info(f"Removed {source_path}")


def main(argv: list[str] | None = None) -> int:
    parser = ArgumentParser(description="Extract a zip archive into a directory")
    _ = parser.add_argument("source_path", type=Path)
    _ = parser.add_argument("dest_path", type=Path)
    _ = parser.add_argument("--wait_for_sink", action="store_true")
    _ = parser.add_argument("--discard_zipfile", action="store_true")
    _ = parser.add_argument("--show_progress", action="store_true")
    _ = parser.add_argument("--log_to_file", action="store_true")
    args = parser.parse_args(argv)

    if args.log_to_file:
        make_fundamental_paths()
        logger.add(LOGS_DIR/"extraction.log", rotation="10 MB")

    try:
        run(
            source_path=args.source_path,
            dest_path=args.dest_path,
            keep_zipfile=extraction_config.keep_zipfile and not args.discard_zipfile,
            wait_for_sink=extraction_config.wait_for_sink or args.wait_for_sink,
            show_progress=extraction_config.show_progress or args.show_progress
        )
    except Exception as error:
        logger.error(error)
        return 1

    logger.success(f"{args.source_path} extracted to {args.dest_path}")
    return 0


if __name__ == "__main__":
    sys.exit(main())

"""Tests for the registry reader/writer lock."""

import threading
import time

from isx_spine.core.locks import ReadWriteLock


class TestReadWriteLock:
    def test_readers_share(self):
        lock = ReadWriteLock()
        with lock.read():
            with lock.read():
                assert lock.readers == 2
        assert lock.readers == 0

    def test_writer_waits_for_readers(self):
        lock = ReadWriteLock()
        order: list[str] = []
        reading = threading.Event()

        def reader():
            with lock.read():
                reading.set()
                time.sleep(0.05)
                order.append("read")

        def writer():
            reading.wait()
            with lock.write():
                order.append("write")

        threads = [threading.Thread(target=reader), threading.Thread(target=writer)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=2)

        assert order == ["read", "write"]

    def test_waiting_writer_blocks_new_readers(self):
        lock = ReadWriteLock()
        order: list[str] = []
        first_reader_in = threading.Event()
        writer_waiting = threading.Event()

        def first_reader():
            with lock.read():
                first_reader_in.set()
                writer_waiting.wait(timeout=2)
                time.sleep(0.05)
                order.append("reader-1")

        def writer():
            first_reader_in.wait()
            writer_waiting.set()
            with lock.write():
                order.append("writer")

        def late_reader():
            writer_waiting.wait()
            while lock._writers_waiting == 0:
                time.sleep(0.001)
            with lock.read():
                order.append("reader-2")

        threads = [threading.Thread(target=f) for f in (first_reader, writer, late_reader)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=2)

        assert order == ["reader-1", "writer", "reader-2"]

#!/usr/bin/env python
"""
Role driver and transport tests
===============================

Tests de extremo a extremo: cliente y servidor sobre socketpair y TCP real,
fuentes y destinos de socket, compresión del flujo y establecimiento de
conexiones.
"""

import os
import random
import shutil
import socket
import tempfile
import threading
import unittest
from unittest import mock

from rsync_stream import (
    ChecksumType,
    CompressingSink,
    CompressionType,
    Config,
    DecompressingSource,
    Frame,
    IoError,
    MAX_PAYLOAD,
    PatchJob,
    ProtocolViolation,
    SocketSink,
    SocketSource,
    TransformFailed,
    ValidationError,
    accept_one,
    connect_to_server,
    encode_frame,
    open_listener,
    patch_file,
    recv_delta_and_patch,
    recv_message,
    recv_signature,
    send_delta,
    send_message,
    send_signature,
)


def random_bytes(size, seed=0):
    rng = random.Random(seed)
    return bytes(rng.getrandbits(8) for _ in range(size))


class ListSource:
    """Fuente en memoria para envolver con DecompressingSource"""

    def __init__(self, chunks):
        self.chunks = list(chunks)

    def pull(self, size):
        if not self.chunks:
            return b'', True
        data = self.chunks.pop(0)
        return data, not self.chunks

    def close(self):
        pass


class ListSink:
    def __init__(self):
        self.pushes = []

    def push(self, data, eof=False):
        self.pushes.append((data, eof))

    def close(self):
        pass


class ServerThread(threading.Thread):
    """Ejecuta el lado servidor y guarda el resultado o la excepción"""

    def __init__(self, target):
        super().__init__(daemon=True)
        self._target_func = target
        self.result = None
        self.error = None

    def run(self):
        try:
            self.result = self._target_func()
        except Exception as e:  # reported by the test thread
            self.error = e


class TestSocketSourceSink(unittest.TestCase):
    """Tests de SocketSource / SocketSink"""

    def setUp(self):
        self.a, self.b = socket.socketpair()

    def tearDown(self):
        self.a.close()
        self.b.close()

    def test_large_push_is_split(self):
        sink = SocketSink(self.a)
        data = random_bytes(MAX_PAYLOAD + 10)
        reader = ServerThread(lambda: [recv_message(self.b), recv_message(self.b)])
        reader.start()
        sink.push(data, eof=True)
        reader.join(timeout=10)
        self.assertIsNone(reader.error)
        first, second = reader.result
        self.assertEqual(first, Frame(data[:MAX_PAYLOAD], False))
        self.assertEqual(second, Frame(data[MAX_PAYLOAD:], True))
        self.assertEqual(sink.frames, 2)

    def test_empty_eof_push_sends_terminal_frame(self):
        sink = SocketSink(self.a)
        sink.push(b'')
        sink.push(b'', eof=True)
        self.assertEqual(recv_message(self.b), Frame(b'', True))
        with self.assertRaises(ProtocolViolation):
            sink.push(b'late')

    def test_source_buffers_oversized_frame(self):
        """Una trama mayor que la petición se entrega en varias lecturas"""
        send_message(self.a, b'0123456789', eof=True)
        source = SocketSource(self.b)
        self.assertEqual(source.pull(4), (b'0123', False))
        self.assertEqual(source.pull(4), (b'4567', False))
        self.assertEqual(source.pull(4), (b'89', True))
        self.assertEqual(source.frames, 1)

    def test_source_empty_frames(self):
        send_message(self.a, b'')
        send_message(self.a, b'x')
        send_message(self.a, b'', eof=True)
        source = SocketSource(self.b)
        self.assertEqual(source.pull(10), (b'', False))
        self.assertEqual(source.pull(10), (b'x', False))
        self.assertEqual(source.pull(10), (b'', True))

    def test_source_truncated_stream(self):
        self.a.sendall(encode_frame(b'abc')[:3])
        self.a.close()
        with self.assertRaises(ProtocolViolation):
            SocketSource(self.b).pull(10)


class TestCompression(unittest.TestCase):
    """Tests de compresión del flujo"""

    def roundtrip(self, comp_type, chunks):
        inner = ListSink()
        sink = CompressingSink(inner, comp_type)
        for i, chunk in enumerate(chunks):
            sink.push(chunk, eof=i == len(chunks) - 1)
        self.assertTrue(inner.pushes[-1][1])
        source = DecompressingSource(ListSource([d for d, _ in inner.pushes]), comp_type)
        out = []
        eof = False
        while not eof:
            data, eof = source.pull(1000)
            out.append(data)
        return b''.join(out), sink

    def test_all_algorithms(self):
        chunks = [b'hello world ' * 500, b'', random_bytes(3000), b'tail']
        for comp_type in (CompressionType.ZLIB, CompressionType.LZ4, CompressionType.ZSTD):
            data, _ = self.roundtrip(comp_type, chunks)
            self.assertEqual(data, b''.join(chunks), comp_type)

    def test_compression_reduces_repetitive_data(self):
        data, sink = self.roundtrip(CompressionType.ZSTD, [b'A' * 50000])
        self.assertEqual(data, b'A' * 50000)
        self.assertLess(sink.bytes_out, sink.bytes_in)

    def test_empty_stream(self):
        for comp_type in (CompressionType.ZLIB, CompressionType.LZ4, CompressionType.ZSTD):
            data, _ = self.roundtrip(comp_type, [b''])
            self.assertEqual(data, b'')

    def test_corrupt_stream(self):
        source = DecompressingSource(ListSource([b'not zlib data at all']), CompressionType.ZLIB)
        with self.assertRaises(ProtocolViolation):
            source.pull(100)


class TestConnections(unittest.TestCase):
    """Tests del establecimiento de conexiones"""

    def test_single_connection_only(self):
        """El servidor deja de escuchar tras aceptar una conexión"""
        listener = open_listener('127.0.0.1', 0)
        port = listener.getsockname()[1]
        client = connect_to_server('127.0.0.1', port, timeout=5)
        conn = accept_one(listener, timeout=5)
        try:
            self.assertEqual(listener.fileno(), -1)
            with self.assertRaises(IoError):
                connect_to_server('127.0.0.1', port, timeout=5)
        finally:
            client.close()
            conn.close()

    def test_connect_refused(self):
        listener = open_listener('127.0.0.1', 0)
        port = listener.getsockname()[1]
        listener.close()
        with self.assertRaises(IoError):
            connect_to_server('127.0.0.1', port, timeout=5)

    def test_bind_in_use(self):
        listener = open_listener('127.0.0.1', 0)
        try:
            with self.assertRaises(IoError):
                open_listener('127.0.0.1', listener.getsockname()[1])
        finally:
            listener.close()


class TestRoleDrivers(unittest.TestCase):
    """Tests de extremo a extremo de las cuatro fases"""

    def setUp(self):
        self.test_dir = tempfile.mkdtemp()
        self.basis_path = os.path.join(self.test_dir, 'data.bin')
        self.new_path = os.path.join(self.test_dir, 'server', 'data.bin')
        os.makedirs(os.path.dirname(self.new_path))

    def tearDown(self):
        shutil.rmtree(self.test_dir)
        Config.reset_defaults()

    def write(self, path, data):
        with open(path, 'wb') as f:
            f.write(data)

    def read(self, path):
        with open(path, 'rb') as f:
            return f.read()

    def sync_over(self, client_sock, server_sock, capacity=None, compression=None,
                  checksum_type=None):
        """Cliente en este hilo, servidor en otro"""
        def serve():
            signature = recv_signature(server_sock, compression=compression, capacity=capacity)
            return send_delta(server_sock, signature, self.new_path,
                              compression=compression, capacity=capacity)

        server = ServerThread(serve)
        server.start()
        send_signature(client_sock, self.basis_path, checksum_type=checksum_type,
                       compression=compression, capacity=capacity)
        recv_delta_and_patch(client_sock, self.basis_path,
                             compression=compression, capacity=capacity)
        server.join(timeout=60)
        self.assertFalse(server.is_alive())
        if server.error is not None:
            raise server.error
        return server.result

    def sync_pair(self, **kwargs):
        a, b = socket.socketpair()
        try:
            return self.sync_over(a, b, **kwargs)
        finally:
            a.close()
            b.close()

    def test_identical_files(self):
        data = random_bytes(20000)
        self.write(self.basis_path, data)
        self.write(self.new_path, data)
        stats = self.sync_pair()
        self.assertEqual(self.read(self.basis_path + '.new'), data)
        self.assertEqual(stats.literal_data, 0)

    def test_modified_file(self):
        basis = random_bytes(20000, seed=1)
        new = basis[:5000] + b'changed!' + basis[6000:] + b'appended tail'
        self.write(self.basis_path, basis)
        self.write(self.new_path, new)
        stats = self.sync_pair()
        self.assertEqual(self.read(self.basis_path + '.new'), new)
        self.assertGreater(stats.matched_data, 10000)

    def test_empty_files(self):
        """Ambos archivos vacíos producen un archivo vacío"""
        self.write(self.basis_path, b'')
        self.write(self.new_path, b'')
        self.sync_pair()
        self.assertEqual(self.read(self.basis_path + '.new'), b'')

    def test_empty_basis(self):
        new = random_bytes(5000, seed=2)
        self.write(self.basis_path, b'')
        self.write(self.new_path, new)
        self.sync_pair()
        self.assertEqual(self.read(self.basis_path + '.new'), new)

    def test_tiny_windows(self):
        basis = random_bytes(3000, seed=3)
        new = basis[1000:] + basis[:1000]
        self.write(self.basis_path, basis)
        self.write(self.new_path, new)
        self.sync_pair(capacity=4)
        self.assertEqual(self.read(self.basis_path + '.new'), new)

    def test_compressed_transfer(self):
        basis = b'line of text\n' * 2000
        new = basis.replace(b'line of text\n', b'line of TEXT\n', 10)
        self.write(self.basis_path, basis)
        self.write(self.new_path, new)
        for comp_type in (CompressionType.ZLIB, CompressionType.LZ4, CompressionType.ZSTD):
            self.sync_pair(compression=comp_type)
            self.assertEqual(self.read(self.basis_path + '.new'), new, comp_type)

    def test_checksum_choice(self):
        basis = random_bytes(8000, seed=4)
        new = basis[:4000] + basis[4100:]
        self.write(self.basis_path, basis)
        self.write(self.new_path, new)
        self.sync_pair(checksum_type=ChecksumType.XXH3)
        self.assertEqual(self.read(self.basis_path + '.new'), new)

    def test_over_tcp(self):
        basis = random_bytes(30000, seed=5)
        new = random_bytes(2000, seed=6) + basis
        self.write(self.basis_path, basis)
        self.write(self.new_path, new)

        listener = open_listener('127.0.0.1', 0)
        port = listener.getsockname()[1]
        client = connect_to_server('127.0.0.1', port, timeout=30)
        server = accept_one(listener, timeout=30)
        try:
            stats = self.sync_over(client, server)
        finally:
            client.close()
            server.close()
        self.assertEqual(self.read(self.basis_path + '.new'), new)
        self.assertEqual(stats.literal_data, 2000)

    def test_peer_closes_mid_signature(self):
        a, b = socket.socketpair()
        try:
            send_message(a, b'rs\x01\x05')
            a.close()
            with self.assertRaises(ProtocolViolation):
                recv_signature(b)
        finally:
            b.close()

    def test_corrupt_signature(self):
        a, b = socket.socketpair()
        try:
            send_message(a, b'\x00' * 12, eof=True)
            with self.assertRaises(TransformFailed):
                recv_signature(b)
        finally:
            a.close()
            b.close()

    def test_job_closed_when_pump_rejects_capacity(self):
        """El job se cierra aunque el Pump no llegue a construirse"""
        created = []

        class TrackingPatchJob(PatchJob):
            def __init__(self, basis):
                super().__init__(basis)
                created.append(self)

        self.write(self.basis_path, b'basis')
        delta_path = os.path.join(self.test_dir, 'data.delta')
        self.write(delta_path, b'')
        with mock.patch('rsync_stream.PatchJob', TrackingPatchJob):
            with self.assertRaises(ValidationError):
                patch_file(self.basis_path, delta_path,
                           os.path.join(self.test_dir, 'out.bin'), capacity=0)
            a, b = socket.socketpair()
            try:
                with self.assertRaises(ValidationError):
                    recv_delta_and_patch(a, self.basis_path, capacity=0)
            finally:
                a.close()
                b.close()
        self.assertEqual(len(created), 2)
        for job in created:
            with self.assertRaises(ValidationError):
                job.step(None, None)

    def test_missing_basis_file(self):
        a, b = socket.socketpair()
        try:
            with self.assertRaises(IoError):
                send_signature(a, os.path.join(self.test_dir, 'missing.bin'))
        finally:
            a.close()
            b.close()


if __name__ == '__main__':
    unittest.main()

#!/usr/bin/env python
"""
Framing codec tests
===================

Cubre el encabezado de 2 bytes, el límite de 15 bits y la recepción de
mensajes sobre sockets reales (socketpair).
"""

import socket
import threading
import unittest

from rsync_stream import (
    Frame,
    HEADER_SIZE,
    MAX_PAYLOAD,
    IoError,
    ProtocolViolation,
    decode_frame,
    decode_header,
    encode_frame,
    encode_header,
    recv_message,
    send_message,
)


class TestFrameHeader(unittest.TestCase):
    """Tests del encabezado de trama"""

    def test_header_layout(self):
        """Longitud en bits 15..1, EOF en el bit 0, big-endian"""
        self.assertEqual(encode_header(0, False), b'\x00\x00')
        self.assertEqual(encode_header(0, True), b'\x00\x01')
        self.assertEqual(encode_header(3, True), b'\x00\x07')
        self.assertEqual(encode_header(0x80, False), b'\x01\x00')
        self.assertEqual(encode_header(MAX_PAYLOAD, True), b'\xff\xff')

    def test_header_decode(self):
        self.assertEqual(decode_header(b'\x00\x07'), (3, True))
        self.assertEqual(decode_header(b'\xff\xfe'), (MAX_PAYLOAD, False))
        self.assertEqual(decode_header(b'\x00\x00'), (0, False))

    def test_payload_limit(self):
        """32767 es válido, 32768 no"""
        encode_header(32767, False)
        with self.assertRaises(ProtocolViolation):
            encode_header(32768, False)
        with self.assertRaises(ProtocolViolation):
            encode_frame(b'x' * 32768)

    def test_negative_length_rejected(self):
        with self.assertRaises(ProtocolViolation):
            encode_header(-1, False)

    def test_short_header_rejected(self):
        with self.assertRaises(ProtocolViolation):
            decode_header(b'\x00')

    def test_frame_roundtrip(self):
        for payload, eof in ((b'', True), (b'abc', False), (b'\x00' * MAX_PAYLOAD, True)):
            wire = encode_frame(payload, eof)
            self.assertEqual(len(wire), HEADER_SIZE + len(payload))
            frame, rest = decode_frame(wire)
            self.assertEqual(frame, Frame(payload, eof))
            self.assertEqual(rest, b'')

    def test_roundtrip_every_length(self):
        """Todas las longitudes 0..32767 con ambos valores de EOF"""
        payload = bytes(range(256)) * 128
        for length in range(MAX_PAYLOAD + 1):
            for eof in (False, True):
                self.assertEqual(decode_header(encode_header(length, eof)), (length, eof))
                wire = encode_frame(payload[:length], eof)
                self.assertEqual(len(wire), HEADER_SIZE + length)
                frame, rest = decode_frame(wire)
                self.assertEqual(frame.eof, eof)
                self.assertEqual(frame.payload, payload[:length])
                self.assertEqual(rest, b'')

    def test_decode_concatenated_frames(self):
        wire = encode_frame(b'one') + encode_frame(b'two', eof=True)
        first, rest = decode_frame(wire)
        second, rest = decode_frame(rest)
        self.assertEqual(first, Frame(b'one', False))
        self.assertEqual(second, Frame(b'two', True))
        self.assertEqual(rest, b'')

    def test_decode_truncated_frame(self):
        wire = encode_frame(b'hello')[:-1]
        with self.assertRaises(ProtocolViolation):
            decode_frame(wire)

    def test_frame_encode_method(self):
        self.assertEqual(Frame(b'abc', eof=True).encode(), b'\x00\x07abc')
        self.assertEqual(Frame(b'abc').length, 3)


class TestSocketMessages(unittest.TestCase):
    """Tests de send_message / recv_message sobre socketpair"""

    def setUp(self):
        self.a, self.b = socket.socketpair()

    def tearDown(self):
        self.a.close()
        self.b.close()

    def test_send_and_receive(self):
        send_message(self.a, b'payload')
        send_message(self.a, b'', eof=True)
        self.assertEqual(recv_message(self.b), Frame(b'payload', False))
        self.assertEqual(recv_message(self.b), Frame(b'', True))

    def test_max_payload_message(self):
        payload = bytes(range(256)) * 127 + b'x' * 255
        self.assertEqual(len(payload), MAX_PAYLOAD)
        # Larger than some socket buffers; read from a helper thread.
        received = []
        reader = threading.Thread(target=lambda: received.append(recv_message(self.b)))
        reader.start()
        send_message(self.a, payload, eof=True)
        reader.join(timeout=10)
        self.assertEqual(received, [Frame(payload, True)])

    def test_oversized_send_rejected(self):
        with self.assertRaises(ProtocolViolation):
            send_message(self.a, b'x' * (MAX_PAYLOAD + 1))

    def test_truncated_payload(self):
        """El par cierra a mitad de la trama"""
        self.a.sendall(encode_header(100, False) + b'x' * 40)
        self.a.close()
        with self.assertRaises(ProtocolViolation):
            recv_message(self.b)

    def test_truncated_max_frame(self):
        """Encabezado de 32767 bytes, solo 100 enviados y cierre"""
        self.a.sendall(encode_header(MAX_PAYLOAD, False) + b'x' * 100)
        self.a.close()
        with self.assertRaises(ProtocolViolation):
            recv_message(self.b)

    def test_truncated_header(self):
        self.a.sendall(b'\x00')
        self.a.close()
        with self.assertRaises(ProtocolViolation):
            recv_message(self.b)

    def test_receiver_limit(self):
        send_message(self.a, b'x' * 20)
        with self.assertRaises(ProtocolViolation):
            recv_message(self.b, max_payload=10)

    def test_receive_timeout_is_io_error(self):
        self.b.settimeout(0.05)
        with self.assertRaises(IoError):
            recv_message(self.b)

    def test_send_on_closed_socket_is_io_error(self):
        self.a.close()
        with self.assertRaises(IoError):
            send_message(self.a, b'data')


if __name__ == '__main__':
    unittest.main()

#!/usr/bin/env python
"""
Command-line interface tests
============================

Tests de la interfaz de línea de comandos: validación de argumentos, códigos
de salida y los comandos locales signature/delta/patch, más un cliente real
contra un servidor en otro hilo.
"""

import contextlib
import io
import logging
import os
import random
import shutil
import tempfile
import threading
import unittest

from rsync_stream import (
    ArgumentError,
    Config,
    RERR_FILEIO,
    RERR_STREAMIO,
    RERR_SYNTAX,
    accept_one,
    configure_logging,
    format_size,
    logger,
    main,
    open_listener,
    parse_args,
    recv_signature,
    send_delta,
)


def random_bytes(size, seed=0):
    rng = random.Random(seed)
    return bytes(rng.getrandbits(8) for _ in range(size))


def run_main(argv):
    """Ejecuta main() capturando stdout y stderr"""
    out, err = io.StringIO(), io.StringIO()
    with contextlib.redirect_stdout(out), contextlib.redirect_stderr(err):
        code = main(argv)
    return code, out.getvalue(), err.getvalue()


class TestArgumentParsing(unittest.TestCase):
    """Tests de validación de argumentos"""

    def test_missing_command(self):
        with self.assertRaises(ArgumentError):
            parse_args([])

    def test_missing_filename(self):
        with self.assertRaises(ArgumentError):
            parse_args(['client'])

    def test_empty_filename(self):
        with self.assertRaises(ArgumentError):
            parse_args(['server', ''])

    def test_bad_port(self):
        with self.assertRaises(ArgumentError):
            parse_args(['client', 'f', '--port', '70000'])
        with self.assertRaises(ArgumentError):
            parse_args(['client', 'f', '--port', 'abc'])

    def test_bad_buffer_size(self):
        with self.assertRaises(ArgumentError):
            parse_args(['patch', 'a', 'b', '-o', 'c', '--buffer-size', '40000'])

    def test_unknown_checksum(self):
        with self.assertRaises(ArgumentError):
            parse_args(['signature', 'a', '-o', 'b', '--checksum', 'md4'])

    def test_defaults(self):
        args = parse_args(['client', 'data.bin'])
        self.assertEqual(args.command, 'client')
        self.assertEqual(args.file, 'data.bin')
        self.assertIsNone(args.port)
        self.assertIsNone(args.output)
        self.assertEqual(args.block_size, 0)

    def test_usage_error_exit_code(self):
        code, out, err = run_main(['client'])
        self.assertEqual(code, RERR_SYNTAX)
        self.assertNotEqual(code, 0)
        self.assertIn('usage', err)
        self.assertEqual(out, '')


class TestLocalCommands(unittest.TestCase):
    """Tests de signature / delta / patch sobre archivos"""

    def setUp(self):
        self.test_dir = tempfile.mkdtemp()
        Config.USE_COLORS = False

    def tearDown(self):
        shutil.rmtree(self.test_dir)
        Config.reset_defaults()

    def path(self, name):
        return os.path.join(self.test_dir, name)

    def write(self, name, data):
        with open(self.path(name), 'wb') as f:
            f.write(data)

    def read(self, name):
        with open(self.path(name), 'rb') as f:
            return f.read()

    def test_signature_delta_patch(self):
        basis = random_bytes(12000, seed=1)
        new = basis[:4000] + b'new bytes in the middle' + basis[4000:]
        self.write('old.bin', basis)
        self.write('new.bin', new)

        code, out, _ = run_main(['signature', self.path('old.bin'), '-o', self.path('old.sig'),
                                 '--checksum', 'xxh128', '--block-size', '1000'])
        self.assertEqual(code, 0)
        self.assertIn('[OK]', out)
        self.assertEqual(len(self.read('old.sig')), 12 + 12 * (4 + 8))

        code, _, _ = run_main(['delta', self.path('old.sig'), self.path('new.bin'),
                               '-o', self.path('new.delta')])
        self.assertEqual(code, 0)
        self.assertLess(len(self.read('new.delta')), 200)

        code, _, _ = run_main(['patch', self.path('old.bin'), self.path('new.delta'),
                               '-o', self.path('rebuilt.bin'), '--buffer-size', '16'])
        self.assertEqual(code, 0)
        self.assertEqual(self.read('rebuilt.bin'), new)

    def test_missing_input_reports_failed_step(self):
        code, _, err = run_main(['signature', self.path('missing.bin'), '-o', self.path('x.sig')])
        self.assertEqual(code, RERR_FILEIO)
        self.assertIn('Generating signature failed', err)

    def test_out_of_range_lengths_rejected_before_io(self):
        """Un tamaño de bloque o strong-len fuera de rango no toca el archivo de salida"""
        self.write('old.bin', random_bytes(3000, seed=3))
        self.write('old.sig', b'PRECIOUS')
        for extra in (['--block-size', '999999'],
                      ['--strong-len', '17'],
                      ['--checksum', 'xxh64', '--strong-len', '9']):
            code, _, err = run_main(['signature', self.path('old.bin'),
                                     '-o', self.path('old.sig')] + extra)
            self.assertEqual(code, RERR_SYNTAX, extra)
            self.assertIn('usage', err)
            self.assertEqual(self.read('old.sig'), b'PRECIOUS')

    def test_lengths_within_range_accepted(self):
        args = parse_args(['signature', 'a', '-o', 'b', '--block-size', '131072',
                           '--checksum', 'sha256', '--strong-len', '32'])
        self.assertEqual(args.block_size, 131072)
        self.assertEqual(args.strong_len, 32)

    def test_client_rejects_block_size_before_connecting(self):
        """El cliente falla con código de sintaxis sin intentar conectar"""
        code, _, err = run_main(['client', self.path('old.bin'), '--port', '1',
                                 '--block-size', '200000'])
        self.assertEqual(code, RERR_SYNTAX)
        self.assertNotIn('Connecting to server', err)

    def test_corrupt_delta_exit_code(self):
        self.write('old.bin', b'basis')
        self.write('bad.delta', b'garbage!')
        code, _, err = run_main(['patch', self.path('old.bin'), self.path('bad.delta'),
                                 '-o', self.path('out.bin')])
        self.assertEqual(code, RERR_STREAMIO)
        self.assertIn('[ERROR]', err)


class TestNetworkClient(unittest.TestCase):
    """Cliente de línea de comandos contra un servidor en otro hilo"""

    def setUp(self):
        self.test_dir = tempfile.mkdtemp()
        Config.USE_COLORS = False

    def tearDown(self):
        shutil.rmtree(self.test_dir)
        Config.reset_defaults()

    def test_client_writes_new_file(self):
        basis = random_bytes(10000, seed=2)
        new = basis[:2000] + basis[3000:] + b'extra'
        basis_path = os.path.join(self.test_dir, 'file.bin')
        new_path = os.path.join(self.test_dir, 'server.bin')
        with open(basis_path, 'wb') as f:
            f.write(basis)
        with open(new_path, 'wb') as f:
            f.write(new)

        listener = open_listener('127.0.0.1', 0)
        port = listener.getsockname()[1]
        errors = []

        def serve():
            try:
                conn = accept_one(listener, timeout=30)
                try:
                    send_delta(conn, recv_signature(conn), new_path)
                finally:
                    conn.close()
            except Exception as e:  # reported by the test thread
                errors.append(e)

        server = threading.Thread(target=serve, daemon=True)
        server.start()
        code, out, err = run_main(['client', basis_path, '--host', '127.0.0.1',
                                   '--port', str(port), '--timeout', '30'])
        server.join(timeout=60)
        self.assertEqual(errors, [])
        self.assertEqual(code, 0, err)
        self.assertIn('Success!', out)
        with open(basis_path + '.new', 'rb') as f:
            self.assertEqual(f.read(), new)

    def test_client_without_server(self):
        listener = open_listener('127.0.0.1', 0)
        port = listener.getsockname()[1]
        listener.close()
        code, _, err = run_main(['client', 'whatever.bin', '--port', str(port)])
        self.assertNotEqual(code, 0)
        self.assertIn('Connecting to server failed', err)


class TestLoggingAndFormatting(unittest.TestCase):

    def tearDown(self):
        Config.reset_defaults()
        logger.setLevel(logging.NOTSET)

    def test_verbosity_levels(self):
        configure_logging(0)
        self.assertEqual(logger.level, logging.WARNING)
        configure_logging(1)
        self.assertEqual(logger.level, logging.INFO)
        configure_logging(2)
        self.assertEqual(logger.level, logging.DEBUG)

    def test_format_size(self):
        self.assertEqual(format_size(512), '512 B')
        self.assertEqual(format_size(2048), '2.00 KB')
        self.assertEqual(format_size(1234567890), '1.15 GB')


if __name__ == '__main__':
    unittest.main()

"""
GreenPAK Development Board - command line tool

Usage:
    gpdevboard status
    gpdevboard detect
    gpdevboard read --mode programming -o nvm.hex
    gpdevboard program design.txt --part SLG46620V --trim 25000 --voltage 3.3
    gpdevboard trim --part SLG46620V --freq 25000
    gpdevboard socket-test
    gpdevboard setup design.txt --part SLG46620V --freq 25000

The board is picked with --index / --serial, defaulting to the
GPDEVBOARD_INDEX / GPDEVBOARD_SERIAL environment variables.
"""

import argparse
import logging
import os
import sys

from . import calibration
from .bitstream import (classify_bitstream, detect_part, read_bitstream,
                        tweak_bitstream)
from .board import DownloadMode, open_board
from .errors import GPDevBoardError
from .parts import Part, bitstream_bytes, part_name
from .transport import SILEGO_VID, UsbSession

PART_CHOICES = {part_name(p).upper(): p
                for p in (Part.SLG46140V, Part.SLG46620V, Part.SLG46621V)}


def _part(text):
    try:
        return PART_CHOICES[text.upper()]
    except KeyError:
        raise argparse.ArgumentTypeError(
            f"unknown part {text!r} (choose from {', '.join(PART_CHOICES)})") from None


def _open(args, session):
    index = args.index if args.index is not None else 0
    if args.serial:
        index = session.index_of_serial(SILEGO_VID, args.serial)
    return open_board(index, session)


# ===== Commands =====

def cmd_status(board, args):
    print(f"Board: {board.get_string_descriptor(2)}")
    status = board.get_status()
    print(f"  Rail A: {status.voltage_a:.3f} V")
    print(f"  Rail B: {status.voltage_b:.3f} V")
    for name in ('internal_overcurrent', 'external_overcurrent', 'internal_undervoltage'):
        print(f"  {'✗' if getattr(status, name) else '✓'} {name.replace('_', ' ')}")
    return 0 if board.check_status() else 1


def cmd_detect(board, args):
    part, bitstream, kind = detect_part(board)
    _, pattern_id = classify_bitstream(part, bitstream)
    print(f"Part: {part_name(part)}")
    print(f"NVM:  {kind.name.lower()}" + (f" (pattern ID {pattern_id})" if pattern_id else ""))
    return 0


def cmd_read(board, args):
    if args.part is None:
        part, _, _ = detect_part(board)
    else:
        part = args.part
        board.set_part(part)
    bitstream = board.download_bitstream(DownloadMode[args.mode.upper()], part)
    text = bitstream.hex()
    if args.output:
        with open(args.output, 'w') as f:
            f.write(text + '\n')
        print(f"Wrote {len(bitstream)} bytes to {args.output}")
    else:
        print(text)
    return 0


def cmd_program(board, args):
    bitstream = bytearray(read_bitstream(args.bitstream, args.part))
    board.reset()
    board.set_part(args.part)
    ftw = 0
    if args.trim:
        ftw = calibration.trim_oscillator(board, args.part, args.voltage, args.trim)
        print(f"Oscillator trimmed: ftw={ftw}")
    tweak_bitstream(bitstream, args.part, ftw, args.pattern_id, args.read_protect)
    board.upload_bitstream(bitstream_bytes(args.part), bitstream, nvram=args.nvram)
    print(f"✓ Uploaded {len(bitstream)} bytes to {'NVM' if args.nvram else 'SRAM'}")
    return 0


def cmd_trim(board, args):
    board.reset()
    ftw = calibration.trim_oscillator(board, args.part, args.voltage, args.freq,
                                      tolerance=args.tolerance)
    print(f"ftw={ftw}")
    return 0


def cmd_socket_test(board, args):
    board.reset()
    ok = calibration.socket_test(board, args.voltage)
    print("✓ Socket OK" if ok else "✗ Socket test failed")
    return 0 if ok else 1


def cmd_setup(session, args):
    selector = args.serial or args.index
    board = calibration.multi_board_test_setup(
        args.bitstream, args.freq, args.voltage, args.part, selector, session,
        pattern_id=args.pattern_id, read_protect=args.read_protect)
    with board:
        print(f"✓ {part_name(args.part)} up at {args.voltage} V")
    return 0


# ===== Entry point =====

def build_parser():
    parser = argparse.ArgumentParser(description='GreenPAK development board tool')
    parser.add_argument('--index', type=int,
                        default=os.getenv('GPDEVBOARD_INDEX'),
                        help='Board index (default: $GPDEVBOARD_INDEX, else 0; '
                             'setup tries every board)')
    parser.add_argument('--serial', default=os.getenv('GPDEVBOARD_SERIAL'),
                        help='Board USB serial number (overrides --index)')
    parser.add_argument('--verbose', '-v', action='store_true', help='Verbose output')
    sub = parser.add_subparsers(dest='command', required=True)

    sub.add_parser('status', help='Show rail voltages and fault flags')
    sub.add_parser('detect', help='Identify the part in the socket')

    p = sub.add_parser('read', help='Read back a bitstream as hex')
    p.add_argument('--mode', choices=[m.name.lower() for m in DownloadMode],
                   default='programming')
    p.add_argument('--part', type=_part, help='Skip detection and assume this part')
    p.add_argument('-o', '--output', help='Write hex to this file instead of stdout')

    p = sub.add_parser('program', help='Load a bitstream file into SRAM or NVM')
    p.add_argument('bitstream', help='GreenPAK Designer text bitstream')
    p.add_argument('--part', type=_part, required=True)
    p.add_argument('--nvram', action='store_true', help='Program NVM (one time!)')
    p.add_argument('--trim', type=int, default=0, metavar='FREQ',
                   help='Trim the RC oscillator to FREQ Hz first')
    p.add_argument('--voltage', type=float, default=3.3)
    p.add_argument('--pattern-id', type=int, default=0)
    p.add_argument('--read-protect', action='store_true')

    p = sub.add_parser('trim', help='Find the oscillator tuning word')
    p.add_argument('--part', type=_part, required=True)
    p.add_argument('--freq', type=int, required=True, help='Target frequency in Hz')
    p.add_argument('--voltage', type=float, default=3.3)
    p.add_argument('--tolerance', type=float, default=calibration.DEFAULT_TOLERANCE)

    p = sub.add_parser('socket-test', help='Check every socket pin can be driven')
    p.add_argument('--voltage', type=float, default=3.3)

    p = sub.add_parser('setup', help='Full bring-up for a functional test')
    p.add_argument('bitstream', help='GreenPAK Designer text bitstream')
    p.add_argument('--part', type=_part, required=True)
    p.add_argument('--freq', type=int, default=0, help='Oscillator target, 0 to skip')
    p.add_argument('--voltage', type=float, default=3.3)
    p.add_argument('--pattern-id', type=int, default=0)
    p.add_argument('--read-protect', action='store_true')
    return parser


COMMANDS = {
    'status': cmd_status,
    'detect': cmd_detect,
    'read': cmd_read,
    'program': cmd_program,
    'trim': cmd_trim,
    'socket-test': cmd_socket_test,
}


def main(argv=None, session_factory=UsbSession):
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(levelname)s %(name)s: %(message)s')

    try:
        with session_factory() as session:
            if args.command == 'setup':
                return cmd_setup(session, args)
            with _open(args, session) as board:
                return COMMANDS[args.command](board, args)
    except KeyboardInterrupt:
        print("\nInterrupted by user")
        return 130
    except (GPDevBoardError, ValueError, OSError) as e:
        print(f"[ERROR] {e}")
        return 1


if __name__ == '__main__':
    sys.exit(main())

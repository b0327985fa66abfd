#!/usr/bin/python3

from . import idt8t49n24x, idt8t49n24x_plan
from .board import BoardConfig, read_board_file
from .device import Clock, Device
from .idt8t49n24x import MaskedBytes, Register, RegisterWrite
from .idt8t49n24x_plan import FrequencyRequest, Mode
from .message import Target, TransportError, deframe
from .plan_tools import PlanningFailed, freq_to_str, str_to_freq

import argparse
import logging
import struct
import sys

from typing import Tuple

log = logging.getLogger(__name__)

def print_readback(clock: Clock) -> None:
    rb = clock.recalc_rate()
    print(f'Output Q2/Q3: {freq_to_str(rb.freq_out, 4)} '
          f'= {freq_to_str(rb.vco, 4)} / {rb.divider}')
    print(f'DPLL input: {freq_to_str(rb.freq_in, 4)} '
          f'/ {rb.prescaler} * {rb.feedback_mult}')
    print(f'LOS threshold: {rb.los_threshold}')
    print(f'Mode: {rb.mode.value}')

def print_registers(data: MaskedBytes, registers: list[Register]) -> None:
    for r in registers:
        value = data.extract(r)
        print(f'{r}={value} ({value:#x})')

def make_request(args: argparse.Namespace,
                 board: BoardConfig) -> FrequencyRequest:
    if args.reference is not None:
        board.reference = args.reference
    if args.mode is not None:
        board.mode = Mode(args.mode)
    if args.bypass:
        board.bypass = True
    return board.request(args.FREQ)

def add_to_argparse(argp: argparse.ArgumentParser,
                    dest: str = 'command', metavar: str = 'COMMAND') -> None:

    def register_lookup(name: str) -> Register:
        try:
            return Register.get(name)
        except KeyError:
            raise ValueError
    register_lookup.__name__ = 'register name'

    def reg_key_value(s: str) -> Tuple[Register, int]:
        if not '=' in s:
            raise ValueError('Key/value pairs must be in the form KEY=VALUE')
        K, V = s.split('=', 1)
        return register_lookup(K), int(V, 0)
    reg_key_value.__name__ = 'register key=value pair'

    modes = [m.value for m in Mode]

    subp = argp.add_subparsers(
        dest=dest, metavar=metavar, required=True, help='Sub-command')

    epilog = '''The frequency can be specified as either a fraction (315/88)
    or a decimal number (148.5), with an optional unit that defaults to
    MHz.'''
    freq = subp.add_parser(
        'freq', aliases=['frequency'], help='Program/report frequency',
        description='''Program or report the Q2/Q3 output frequency.  With no
        frequency, the board configured frequency is programmed if there is
        one, otherwise the current device frequency is reported.''',
        epilog=epilog)
    plan = subp.add_parser(
        'plan', help='Frequency planning', epilog = epilog,
        description='''Compute and print a frequency plan without programming it
        to the device.''')
    for p, n in (freq, '?'), (plan, None):
        p.add_argument('FREQ', nargs=n, type=str_to_freq,
                       help='Output frequency')
        p.add_argument('-r', '--reference', metavar='REF', type=str_to_freq,
                       help='Reference input frequency')
        p.add_argument('-m', '--mode', choices=modes,
                       help='Synthesizer or jitter attenuator')
        p.add_argument('-B', '--bypass', action='store_true',
                       help='Allow bypassing the NS2 output divider')
        p.add_argument('-q', '--q0', action='store_true',
                       help='Also program the Q0 integer divider')
    plan.add_argument('-v', '--verbose', action='store_true',
                      help='Report register settings')

    subp.add_parser('init', help='Load default configuration',
                    description='''Load the default jitter attenuator
                    configuration, and route loss-of-lock to the GPIOs.''')

    mode = subp.add_parser('mode', help='Set operating mode',
                           description='Set operating mode')
    mode.add_argument('MODE', choices=modes, help='Mode')

    valget = subp.add_parser(
        'get', help='Get registers', description='Get registers')
    valget.add_argument('KEY', type=register_lookup, nargs='+', help='KEYs')

    subp.add_parser(
        'dump', help='Get all registers', description='Get all registers')

    valset = subp.add_parser(
        'set', help='Set registers', description='Set registers')
    valset.add_argument('KV', type=reg_key_value, nargs='+',
                        metavar='KEY=VALUE', help='KEY=VALUE pairs')

def run_command(args: argparse.Namespace, clock: Clock,
                board: BoardConfig) -> None:
    command = args.command
    if command in ('freq', 'frequency'):
        if args.FREQ is None and board.frequency is None:
            print_readback(clock)
            return
        settings = clock.set_rate(make_request(args, board), args.q0)
        idt8t49n24x_plan.report_plan(settings, chip=clock.chip)

    elif command == 'plan':
        settings = idt8t49n24x_plan.plan_request(
            make_request(args, board), clock.chip)
        idt8t49n24x_plan.report_plan(settings, args.verbose, args.q0,
                                     clock.chip)

    elif command == 'init':
        clock.init()

    elif command == 'mode':
        clock.set_mode(Mode(args.MODE))

    elif command == 'get':
        print_registers(clock.read(args.KEY), args.KEY)

    elif command == 'dump':
        print_registers(clock.dump(), list(idt8t49n24x.REGISTERS.values()))

    elif command == 'set':
        clock.apply(idt8t49n24x.encode(*args.KV))

    else:
        assert None, f'This should never happen: {command}'

def print_capture(capture: bytearray) -> None:
    while capture:
        length = capture[3] + 6
        msg = deframe(bytes(capture[:length]))
        del capture[:length]
        _, address = struct.unpack('>BH', msg.payload[:3])
        for i, b in enumerate(msg.payload[3:]):
            print(RegisterWrite(address + i, b))

def main(argv: list[str]|None = None) -> int:
    argp = argparse.ArgumentParser(description='8T49N24x clock utility')
    argp.add_argument('-b', '--board', metavar='FILE',
                      help='Board configuration file')
    argp.add_argument('--name', help='USB serial number of the bridge')
    argp.add_argument('-n', '--dry-run', action='store_true',
                      help='Print the register writes instead of sending them')
    argp.add_argument('-d', '--debug', action='store_true',
                      help='Debug logging')
    add_to_argparse(argp)
    args = argp.parse_args(argv)

    logging.basicConfig(
        level = logging.DEBUG if args.debug else logging.INFO,
        format = '%(levelname)s %(name)s: %(message)s')

    try:
        board = read_board_file(args.board) if args.board else BoardConfig()
        target: Target
        if args.dry_run or args.command == 'plan':
            target = bytearray()
        else:
            target = Device(args).get_usb()
        clock = Clock(target, board.i2c_address)
        run_command(args, clock, board)
    except (PlanningFailed, TransportError, ValueError,
            FileNotFoundError) as e:
        log.error('%s', e)
        return 1

    if args.dry_run and args.command != 'plan':
        print_capture(clock.target) # type: ignore
    return 0

def test_plan_command(capsys) -> None:
    assert main(['plan', '148.5', '-r', '40', '-v']) == 0
    out = capsys.readouterr().out
    assert 'VCO: 3.564 GHz' in out
    assert '0x0070 = 0x00' in out

def test_dry_run_freq(capsys) -> None:
    assert main(['-n', 'freq', '148.5MHz']) == 0
    out = capsys.readouterr().out.splitlines()
    # The report, then the captured writes.
    assert '0x0070 = 0x05' in out
    assert out[-1] == '0x0070 = 0x00'

def test_dry_run_readback(capsys) -> None:
    assert main(['-n', 'freq']) == 0
    out = capsys.readouterr().out
    assert 'Mode: jitter-attenuator' in out

def test_dry_run_set(capsys) -> None:
    assert main(['-n', 'set', 'los0=20', 'ref1_dis=1']) == 0
    out = capsys.readouterr().out.splitlines()
    assert out == ['0x0071 = 0x00', '0x0072 = 0x00', '0x0073 = 0x14',
                   '0x000a = 0x20']

def test_plan_failure() -> None:
    assert main(['plan', '500']) == 1

if __name__ == '__main__':
    sys.exit(main())

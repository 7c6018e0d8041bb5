"""Command line interface of demoterm"""

import argparse
import logging
import os
import shlex
import signal
import sys
import tempfile
import time

import demoterm.config
from demoterm.anim import EncoderError
from demoterm.eventlog import EventLogError
from demoterm.raster import RasterizationError
from demoterm.replay import NoEventsError
from demoterm.session import SessionError

logger = logging.getLogger('demoterm')

USAGE = """demoterm {start,stop,render} [-h]

Record a terminal session and render it as an animated GIF
"""
EPILOG = ("See also 'demoterm start --help', 'demoterm stop --help' and "
          "'demoterm render --help'")
START_USAGE = "demoterm start [-c COMMAND] [-g GEOMETRY] [--foreground] [-v] [-h]"
STOP_USAGE = """demoterm stop [output_path] [-g GEOMETRY] [--font FONT]
                 [--font-size SIZE] [-M MAX_DURATION] [-D DELAY] [--keep-log]
                 [-v] [-h]"""
RENDER_USAGE = """demoterm render input_file [output_path] [-g GEOMETRY]
                 [--font FONT] [--font-size SIZE] [-M MAX_DURATION] [-D DELAY]
                 [-v] [-h]"""

# Errors reported to the user with a non-zero exit code
REPORTED_ERRORS = (
    SessionError,
    EventLogError,
    NoEventsError,
    RasterizationError,
    EncoderError,
)


def parse(args, default_cmd, default_geometry, default_font, default_font_size,
          default_loop_delay):
    """Parse command line arguments

    :param args: Arguments to parse
    :param default_cmd: Default program (with argument list) recorded
    :param default_geometry: Default geometry of the screen
    :param default_font: Default font used for rendering (None for the
    default font of Pillow)
    :param default_font_size: Default font size in points
    :param default_loop_delay: Duration of the last frame of the animation in
    milliseconds
    :return: Tuple made of the subcommand called ('start', 'stop' or
    'render') and all parsed arguments
    """
    verbose_parser = argparse.ArgumentParser(add_help=False)
    verbose_parser.add_argument(
        '-v', '--verbose',
        action='store_true',
        help='log debug messages to a temporary file'
    )

    command_parser = argparse.ArgumentParser(add_help=False)
    command_parser.add_argument(
        '-c', '--command',
        help=(('specify the program to record with optional arguments '
               '(default: {})').format(default_cmd)),
        default=default_cmd,
        metavar='COMMAND',
    )

    geometry_parser = argparse.ArgumentParser(add_help=False)
    geometry_parser.add_argument(
        '-g', '--screen-geometry',
        help='geometry of the terminal screen given as the number of columns '
             'and the number of rows separated by the character "x". For '
             'example "82x19" for an 82 columns by 19 rows screen.',
        metavar='GEOMETRY',
        default=default_geometry,
        type=demoterm.config.validate_geometry
    )

    render_parser = argparse.ArgumentParser(add_help=False)
    render_parser.add_argument(
        '--font',
        help='path of the TrueType font used to render the animation '
             '(default: {})'.format(default_font or 'default font of Pillow'),
        default=default_font,
        metavar='FONT'
    )
    render_parser.add_argument(
        '--font-size',
        type=int,
        default=default_font_size,
        metavar='SIZE',
        help='font size in points (default: {})'.format(default_font_size)
    )
    render_parser.add_argument(
        '-M', '--max-frame-duration',
        type=demoterm.config.integral_duration_validation,
        metavar='MAX_DURATION',
        default=None,
        help='maximum duration of a frame in milliseconds (default: no '
             'maximum value)'
    )
    render_parser.add_argument(
        '-D', '--loop-delay',
        type=demoterm.config.integral_duration_validation,
        metavar='DELAY',
        default=default_loop_delay,
        help=('duration in milliseconds of the last frame of the animation '
              '(default: {}ms)'.format(default_loop_delay))
    )

    if args and args[0] == 'start':
        parser = argparse.ArgumentParser(
            description='start recording a terminal session',
            parents=[command_parser, geometry_parser, verbose_parser],
            usage=START_USAGE
        )
        parser.add_argument(
            '--foreground',
            action='store_true',
            help='record in the current terminal instead of a background '
                 'process; the recording ends when the program exits'
        )
        return args[0], parser.parse_args(args[1:])

    if args and args[0] == 'stop':
        parser = argparse.ArgumentParser(
            description='stop the recording and render it as an animation',
            parents=[geometry_parser, render_parser, verbose_parser],
            usage=STOP_USAGE
        )
        parser.add_argument(
            'output_path',
            nargs='?',
            default=demoterm.config.DEFAULT_OUTPUT,
            help='filename of the animation, rendered as SVG if it ends with '
                 '".svg" and as GIF otherwise (default: {})'
                 .format(demoterm.config.DEFAULT_OUTPUT),
        )
        parser.add_argument(
            '--keep-log',
            action='store_true',
            help='do not delete the recording once the animation is rendered'
        )
        return args[0], parser.parse_args(args[1:])

    if args and args[0] == 'render':
        parser = argparse.ArgumentParser(
            description='render a recording as an animation',
            parents=[geometry_parser, render_parser, verbose_parser],
            usage=RENDER_USAGE
        )
        parser.add_argument(
            'input_file',
            help='recording of a terminal session'
        )
        parser.add_argument(
            'output_path',
            nargs='?',
            help='optional filename of the animation. If missing, a random '
                 'path will be automatically generated.',
        )
        return args[0], parser.parse_args(args[1:])

    parser = argparse.ArgumentParser(prog='demoterm', usage=USAGE,
                                     epilog=EPILOG)
    parser.add_argument('command', choices=['start', 'stop', 'render'])
    # Valid commands are handled above: this exits with an error message
    parser.parse_args(args)
    parser.error('invalid command')


def start_subcommand(process_args, geometry, foreground, input_fileno,
                     output_fileno, handle_path, log_path):
    """Start a recording session, in the background unless `foreground`"""
    from demoterm.session import (AlreadyRunning, HandleStore,
                                  SessionController, TerminalMode,
                                  get_terminal_size, install_signal_handlers)
    from demoterm.supervisor import run_detached

    handle_store = HandleStore(handle_path)
    if handle_store.exists():
        raise AlreadyRunning('Recording is already in progress')

    if geometry is None:
        geometry = get_terminal_size(output_fileno)
    controller = SessionController(process_args, log_path, handle_store,
                                   input_fileno, echo_fileno=output_fileno,
                                   geometry=geometry)

    def run_session():
        previous_handlers = install_signal_handlers(controller)
        try:
            controller.run()
        finally:
            for signum, previous_handler in previous_handlers.items():
                signal.signal(signum, previous_handler)

    if foreground:
        logger.info('Recording started, enter "exit" command or Control-D '
                    'to end')
        with TerminalMode(input_fileno):
            # Do not write anything to the output (print, logger...) while in
            # this context manager: the recorded program owns the terminal
            run_session()
        logger.info('Recording ended, run "demoterm render {}" to render it'
                    .format(log_path))
        return

    pid = run_detached(run_session)
    _wait_for_handle(handle_store, pid)
    logger.info('Recording started (pid {}), run "demoterm stop" to end it'
                .format(pid))


def _wait_for_handle(handle_store, pid, timeout=demoterm.config.STOP_TIMEOUT,
                     poll_interval=demoterm.config.POLL_INTERVAL):
    """Wait for the background process to create the session handle"""
    deadline = time.monotonic() + timeout
    while True:
        # The handle may belong to a concurrent start which won the race
        try:
            if handle_store.read().pid == pid:
                return
        except SessionError:
            pass
        exited_pid, _ = os.waitpid(pid, os.WNOHANG)
        if exited_pid == pid:
            raise SessionError('Recording process exited before the session '
                               'started')
        if time.monotonic() >= deadline:
            raise SessionError('Recording process did not start the session')
        time.sleep(poll_interval)


def stop_subcommand(handle_path, log_path, output_path, geometry, font,
                    font_size, max_frame_duration, loop_delay, keep_log):
    """Stop the recording session and render the recording"""
    from demoterm.session import HandleStore, stop_session

    stop_session(HandleStore(handle_path))
    logger.info('Recording stopped. Generating animation...')
    render_subcommand(log_path, output_path, geometry, font, font_size,
                      max_frame_duration, loop_delay)
    if not keep_log:
        try:
            os.remove(log_path)
        except FileNotFoundError:
            pass


def render_subcommand(log_path, output_path, geometry, font, font_size,
                      max_frame_duration, loop_delay):
    """Render the animation from a recording"""
    from demoterm.anim import render_animation
    from demoterm.eventlog import load
    from demoterm.raster import Rasterizer
    from demoterm.replay import timed_frames

    logger.info('Rendering started')
    events = load(log_path)
    frames = timed_frames(events, max_frame_duration, loop_delay)
    rasterizer = Rasterizer(geometry, font, font_size)
    render_animation(frames, output_path, rasterizer)
    logger.info('Rendering ended, animation is {}'.format(output_path))


def default_output_path():
    """Path of an animation in the temporary directory

    The file is not created here so that a failed rendering leaves nothing
    behind."""
    filename = 'demoterm_{}_{}.gif'.format(time.strftime('%Y%m%d_%H%M%S'),
                                           os.getpid())
    return os.path.join(tempfile.gettempdir(), filename)


def main(args=None, input_fileno=None, output_fileno=None):
    """Run demoterm and return the exit code"""
    if args is None:
        args = sys.argv
    if input_fileno is None:
        input_fileno = sys.stdin.fileno()
    if output_fileno is None:
        output_fileno = sys.stdout.fileno()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.INFO)
    console_formatter = logging.Formatter('%(message)s')
    console_handler.setFormatter(console_formatter)
    logger.handlers = [console_handler]
    logger.setLevel(logging.DEBUG)

    command, args = parse(args[1:],
                          default_cmd=demoterm.config.default_command(),
                          default_geometry=None,
                          default_font=demoterm.config.find_font(),
                          default_font_size=demoterm.config.DEFAULT_FONT_SIZE,
                          default_loop_delay=demoterm.config.DEFAULT_LAST_FRAME_DURATION)

    if args.verbose:
        _, log_filename = tempfile.mkstemp(prefix='demoterm_', suffix='.log')
        file_handler = logging.FileHandler(filename=log_filename, mode='w')
        file_handler.setLevel(logging.DEBUG)
        file_formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
        file_handler.setFormatter(file_formatter)
        logger.handlers.append(file_handler)
        logger.info('Logging to {}'.format(log_filename))

    handle_path = demoterm.config.handle_path()
    log_path = demoterm.config.recording_path()
    geometry = args.screen_geometry
    if geometry is None and command != 'start':
        geometry = demoterm.config.DEFAULT_GEOMETRY

    exit_code = 0
    try:
        if command == 'start':
            start_subcommand(shlex.split(args.command), geometry,
                             args.foreground, input_fileno, output_fileno,
                             handle_path, log_path)
        elif command == 'stop':
            stop_subcommand(handle_path, log_path, args.output_path, geometry,
                            args.font, args.font_size,
                            args.max_frame_duration, args.loop_delay,
                            args.keep_log)
        else:
            output_path = args.output_path
            if output_path is None:
                output_path = default_output_path()
            render_subcommand(args.input_file, output_path, geometry,
                              args.font, args.font_size,
                              args.max_frame_duration, args.loop_delay)
    except REPORTED_ERRORS as exc:
        logger.error('Error: {}'.format(exc))
        exit_code = 1

    for handler in logger.handlers:
        handler.close()

    return exit_code

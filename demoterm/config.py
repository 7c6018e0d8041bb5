import os
import tempfile

DEFAULT_GEOMETRY = (80, 24)
DEFAULT_FONT_SIZE = 20
DEFAULT_LAST_FRAME_DURATION = 1000
DEFAULT_OUTPUT = 'demoterm.gif'

# Seconds
CHECKPOINT_INTERVAL = 5
POLL_INTERVAL = 0.1
STOP_TIMEOUT = 5

HANDLE_FILENAME = 'demoterm.pid'
RECORDING_FILENAME = 'demoterm_recording.json'

FONT_CANDIDATES = [
    '/usr/share/fonts/truetype/dejavu/DejaVuSansMono.ttf',
    '/usr/share/fonts/dejavu/DejaVuSansMono.ttf',
    '/usr/share/fonts/TTF/DejaVuSansMono.ttf',
    '/usr/share/fonts/truetype/liberation/LiberationMono-Regular.ttf',
    '/usr/share/fonts/liberation-mono/LiberationMono-Regular.ttf',
    '/Library/Fonts/Menlo.ttc',
    '/System/Library/Fonts/Menlo.ttc',
]


def runtime_directory():
    """Directory holding the session handle and the recording"""
    return os.environ.get('DEMOTERM_RUNTIME_DIR') or tempfile.gettempdir()


def handle_path():
    return os.path.join(runtime_directory(), HANDLE_FILENAME)


def recording_path():
    return os.path.join(runtime_directory(), RECORDING_FILENAME)


def default_command():
    return os.environ.get('SHELL', 'sh')


def find_font():
    """Return the path of the first monospaced font available, or None"""
    for path in FONT_CANDIDATES:
        if os.path.isfile(path):
            return path
    return None


def validate_geometry(screen_geometry):
    """Raise ValueError if 'screen_geometry' does not conform to <integer>x<integer> format"""
    columns, rows = [int(value) for value in screen_geometry.lower().split('x')]
    if columns <= 0 or rows <= 0:
        raise ValueError('Invalid value for screen-geometry option: "{}"'.format(screen_geometry))
    return columns, rows


def integral_duration_validation(duration):
    if duration.lower().endswith('ms'):
        duration = duration[:-len('ms')]

    if duration.isdigit() and int(duration) >= 1:
        return int(duration)
    raise ValueError('duration must be an integer greater than 0')

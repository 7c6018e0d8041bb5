"""Rasterization of screen states into fixed size images"""
import math

from PIL import Image, ImageDraw, ImageFont
from wcwidth import wcwidth

from demoterm import config

DEFAULT_FOREGROUND = (255, 255, 255)
DEFAULT_BACKGROUND = (0, 0, 0)
TAB_SIZE = 8


class RasterizationError(Exception):
    pass


class ScreenLayout:
    """Arrangement of the text of a screen state on a screen of
    `columns` x `rows` character cells

    Only the last `rows` lines of the text are visible, like on a terminal
    which scrolled down as output was appended.
    """
    def __init__(self, columns, rows):
        if columns <= 0 or rows <= 0:
            raise ValueError('Invalid screen geometry: {}x{}'.format(columns, rows))
        self.columns = columns
        self.rows = rows

    def lines(self, text):
        display_lines = []
        for line in text.splitlines():
            display_lines.extend(self._wrap(line.expandtabs(TAB_SIZE)))
        return display_lines[-self.rows:]

    def _wrap(self, line):
        """Split line in chunks of at most `columns` cells"""
        chunks = []
        chunk = ''
        width = 0
        for char in line:
            char_width = wcwidth(char)
            if char_width < 0:
                # Non printable character
                continue
            if width + char_width > self.columns:
                chunks.append(chunk)
                chunk, width = '', 0
            chunk += char
            width += char_width
        chunks.append(chunk)
        return chunks


def load_font(font_path=None, font_size=config.DEFAULT_FONT_SIZE):
    """Return the font at font_path, or the default font of Pillow if
    font_path is None"""
    if font_path is None:
        return ImageFont.load_default(font_size)
    try:
        return ImageFont.truetype(font_path, font_size)
    except OSError as exc:
        raise RasterizationError('Unable to load font "{}": {}'
                                 .format(font_path, exc)) from exc


class Rasterizer:
    """Render screen states as images, all of the same size

    :param geometry: Number of columns and rows of the screen
    :param font_path: Path of a TrueType font, preferably monospaced
    :param font_size: Size of the font in points
    :param padding: Margin around the text in pixels
    :param line_spacing: Space between two lines in pixels
    """
    def __init__(self, geometry, font_path=None,
                 font_size=config.DEFAULT_FONT_SIZE,
                 foreground=DEFAULT_FOREGROUND, background=DEFAULT_BACKGROUND,
                 padding=10, line_spacing=4):
        columns, rows = geometry
        self.layout = ScreenLayout(columns, rows)
        self.font = load_font(font_path, font_size)
        self.foreground = foreground
        self.background = background
        self.padding = padding

        self.cell_width = max(1, int(math.ceil(self.font.getlength('M'))))
        _, _, _, bottom = self.font.getbbox('Mgy|')
        self.cell_height = max(1, bottom) + line_spacing
        self.size = (2 * padding + columns * self.cell_width,
                     2 * padding + rows * self.cell_height)

    def rasterize(self, text):
        """Return an RGB image of the screen state `text`"""
        image = Image.new('RGB', self.size, self.background)
        draw = ImageDraw.Draw(image)
        for row, line in enumerate(self.layout.lines(text)):
            if not line:
                continue
            position = (self.padding, self.padding + row * self.cell_height)
            try:
                draw.text(position, line, font=self.font, fill=self.foreground)
            except (OSError, UnicodeError, ValueError) as exc:
                raise RasterizationError('Unable to render line {!r}: {}'
                                         .format(line, exc)) from exc
        return image

"""Assembly of replayed frames into an animation file

Two formats are supported:
    - GIF: every frame is rasterized with a `Rasterizer` and the images are
    encoded with Pillow
    (Pillow merges consecutive identical images, so a GIF may hold fewer
    frames than there are events when an event leaves the screen unchanged)
    - SVG: every frame is a group of text elements; all frames are stacked
    vertically and a CSS animation scrolls from one frame to the next

Output files are written to a temporary file first and renamed once complete
so that a failure never leaves a partial animation behind.
"""
import os
import tempfile

from lxml import etree
from wcwidth import wcswidth

# GIF frame delays are stored in hundredths of a second and most viewers
# slow down frames shorter than 20ms
MIN_GIF_FRAME_DURATION = 20

# Default size for a character cell rendered as SVG.
CELL_WIDTH = 8
CELL_HEIGHT = 17

# The number of character cells to leave when placing successive frames
# so content does not bleed into adjacent frames
FRAME_CELL_SPACING = 1

# XML namespaces
SVG_NS = 'http://www.w3.org/2000/svg'
XLINK_NS = 'http://www.w3.org/1999/xlink'

CSS_BODY = """
    #screen {
        font-family: 'DejaVu Sans Mono', monospace;
        font-style: normal;
        font-size: 14px;
    }

    .background {
        fill: #000000;
    }

    text {
        fill: #ffffff;
        dominant-baseline: text-before-edge;
        white-space: pre;
    }
"""


class EncoderError(Exception):
    pass


def render_animation(frames, filename, rasterizer):
    """Write frames to filename, as SVG if filename ends with '.svg' and as
    GIF otherwise"""
    if filename.lower().endswith('.svg'):
        render_svg(frames, rasterizer.layout, filename)
    else:
        render_gif(frames, rasterizer, filename)


def render_gif(frames, rasterizer, filename, loop=0):
    images = []
    durations = []
    for frame in frames:
        images.append(rasterizer.rasterize(frame.text))
        durations.append(max(MIN_GIF_FRAME_DURATION, frame.duration))
    if not images:
        raise EncoderError('No frames to encode')

    def write(output_file):
        images[0].save(output_file, format='GIF', save_all=True,
                       append_images=images[1:], duration=durations,
                       loop=loop)

    _write_atomically(filename, write)


def render_svg(frames, layout, filename, cell_width=CELL_WIDTH,
               cell_height=CELL_HEIGHT):
    root = _render_document(frames, layout, cell_width, cell_height)

    def write(output_file):
        output_file.write(etree.tostring(root, xml_declaration=True,
                                         encoding='utf-8'))

    _write_atomically(filename, write)


def _svg(tag):
    return '{{{}}}{}'.format(SVG_NS, tag)


def _render_document(frames, layout, cell_width, cell_height):
    width = layout.columns * cell_width
    height = layout.rows * cell_height
    attributes = {
        'id': 'screen',
        'width': str(width),
        'height': str(height),
        'viewBox': '0 0 {} {}'.format(width, height),
    }
    root = etree.Element(_svg('svg'), attributes,
                         nsmap={None: SVG_NS, 'xlink': XLINK_NS})
    tree_defs = etree.SubElement(root, _svg('defs'))
    style = etree.SubElement(tree_defs, _svg('style'), {'type': 'text/css'})
    etree.SubElement(root, _svg('rect'), {
        'class': 'background',
        'height': '100%',
        'width': '100%',
        'x': '0',
        'y': '0',
    })
    screen_view = etree.SubElement(root, _svg('g'), {'id': 'screen_view'})

    definitions = {}
    timings = {}
    animation_duration = None
    for frame_count, frame in enumerate(frames):
        # To prevent line jumping up and down by one pixel between two frames,
        # add h % 2 so that offset is an even number.  (issue noticed in
        # Firefox only)
        h = layout.rows + FRAME_CELL_SPACING
        offset = frame_count * (h + h % 2) * cell_height
        frame_group = _render_frame(offset, layout.lines(frame.text),
                                    cell_width, cell_height, definitions)
        screen_view.append(frame_group)
        timings[frame.time] = -offset
        animation_duration = frame.time + frame.duration

    if animation_duration is None:
        raise EncoderError('No frames to encode')

    for definition in definitions.values():
        tree_defs.append(definition)
    style.text = etree.CDATA(CSS_BODY + _css_animation(timings,
                                                       animation_duration))
    return root


def _render_frame(offset, lines, cell_width, cell_height, definitions):
    """Return a group element containing the lines of a frame

    Identical lines are defined only once and referenced with 'use' elements.

    :param definitions: Mapping between the text of a line and the element
    defining it (updated in place)
    """
    frame_group = etree.Element(_svg('g'))
    for row, line in enumerate(lines):
        if not line.strip():
            continue
        if line not in definitions:
            text_tag = etree.Element(_svg('text'), {
                'id': 'l{}'.format(len(definitions) + 1),
                'x': '0',
                'textLength': str(max(1, wcswidth(line)) * cell_width),
            })
            text_tag.text = line
            definitions[line] = text_tag

        use_attributes = {
            '{{{}}}href'.format(XLINK_NS): '#{}'.format(definitions[line].attrib['id']),
            'y': str(offset + row * cell_height),
        }
        etree.SubElement(frame_group, _svg('use'), use_attributes)
    return frame_group


def _css_animation(timings, animation_duration):
    animation_duration = max(1, animation_duration)
    transforms = []
    last_offset = None
    transform_format = "{time:.3f}%{{transform:translateY({offset}px)}}"
    for time, offset in sorted(timings.items()):
        transforms.append(transform_format.format(
            time=100.0 * time / animation_duration,
            offset=offset
        ))
        last_offset = offset

    if last_offset is not None:
        transforms.append(transform_format.format(time=100, offset=last_offset))

    return """
    @keyframes roll {{
        {transforms}
    }}

    #screen_view {{
        animation-duration: {duration}ms;
        animation-iteration-count: infinite;
        animation-name: roll;
        animation-timing-function: steps(1, end);
        animation-fill-mode: forwards;
    }}
""".format(duration=animation_duration, transforms=os.linesep.join(transforms))


def _write_atomically(filename, write):
    """Call write() with a temporary file then rename it to filename"""
    directory = os.path.dirname(os.path.abspath(filename))
    try:
        fd, tmp_path = tempfile.mkstemp(prefix='.demoterm_', dir=directory)
    except OSError as exc:
        raise EncoderError('Unable to write {}: {}'.format(filename, exc)) from exc

    try:
        with open(fd, 'wb') as output_file:
            write(output_file)
        os.chmod(tmp_path, 0o644)
        os.replace(tmp_path, filename)
    except BaseException as exc:
        try:
            os.unlink(tmp_path)
        except FileNotFoundError:
            pass
        if isinstance(exc, OSError):
            raise EncoderError('Unable to write {}: {}'.format(filename, exc)) from exc
        raise

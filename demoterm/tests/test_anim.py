import os
import tempfile
import unittest
from unittest.mock import MagicMock

from lxml import etree
from PIL import Image

from demoterm import anim
from demoterm.eventlog import TerminalEvent
from demoterm.raster import RasterizationError, Rasterizer, ScreenLayout
from demoterm.replay import TimedFrame, timed_frames

EVENTS = [
    TerminalEvent.from_input(0, 'echo hi\n'),
    TerminalEvent.from_output(50, 'hi\n'),
]

SVG_NAMESPACES = {
    'svg': anim.SVG_NS,
    'xlink': anim.XLINK_NS,
}


class TestAnim(unittest.TestCase):
    def setUp(self):
        self.directory = tempfile.mkdtemp(prefix='demoterm_')

    def test_render_gif(self):
        filename = os.path.join(self.directory, 'demoterm.gif')
        rasterizer = Rasterizer((20, 5))
        anim.render_gif(timed_frames(EVENTS), rasterizer, filename)

        # Both screen states are distinct so each one is a frame of the GIF
        with Image.open(filename) as image:
            self.assertEqual(image.format, 'GIF')
            self.assertEqual(image.n_frames, 2)
            self.assertEqual(image.size, rasterizer.size)
            self.assertEqual(image.info.get('loop'), 0)
        self.assertEqual(os.listdir(self.directory), ['demoterm.gif'])

    def test_gif_frame_durations(self):
        filename = os.path.join(self.directory, 'demoterm.gif')
        frames = [
            TimedFrame(0, 0, 'a'),
            TimedFrame(0, 500, 'ab'),
            TimedFrame(500, 1000, 'abc'),
        ]
        anim.render_gif(frames, Rasterizer((20, 5)), filename)

        durations = []
        with Image.open(filename) as image:
            for index in range(image.n_frames):
                image.seek(index)
                durations.append(image.info['duration'])
        self.assertEqual(durations, [anim.MIN_GIF_FRAME_DURATION, 500, 1000])

    def test_identical_frames_merged(self):
        filename = os.path.join(self.directory, 'demoterm.gif')
        events = EVENTS + [TerminalEvent.from_output(80, '\x07')]
        anim.render_gif(timed_frames(events), Rasterizer((20, 5)), filename)

        with Image.open(filename) as image:
            self.assertEqual(image.n_frames, 2)

    def test_render_svg(self):
        filename = os.path.join(self.directory, 'demoterm.svg')
        anim.render_svg(timed_frames(EVENTS), ScreenLayout(20, 5), filename)

        tree = etree.parse(filename)
        root = tree.getroot()
        self.assertEqual(root.tag, '{{{}}}svg'.format(anim.SVG_NS))
        frames = root.findall('svg:g[@id="screen_view"]/svg:g', SVG_NAMESPACES)
        self.assertEqual(len(frames), 2)

        # Identical lines are only defined once
        definitions = root.findall('svg:defs/svg:text', SVG_NAMESPACES)
        self.assertEqual(sorted(d.text for d in definitions), ['echo hi', 'hi'])
        uses = [len(frame.findall('svg:use', SVG_NAMESPACES)) for frame in frames]
        self.assertEqual(uses, [1, 2])

        style = root.find('svg:defs/svg:style', SVG_NAMESPACES)
        self.assertIn('animation-duration: 1050ms', style.text)

    def test_render_animation_format(self):
        rasterizer = Rasterizer((20, 5))
        test_cases = [
            ('demoterm.gif', b'GIF8'),
            ('demoterm.GIF', b'GIF8'),
            ('demoterm.svg', b'<?xml'),
            ('demoterm', b'GIF8'),
        ]
        for name, magic in test_cases:
            with self.subTest(case=name):
                filename = os.path.join(self.directory, name)
                anim.render_animation(timed_frames(EVENTS), filename, rasterizer)
                with open(filename, 'rb') as animation_file:
                    self.assertEqual(animation_file.read(len(magic)), magic)

    def test_no_partial_output(self):
        filename = os.path.join(self.directory, 'demoterm.gif')
        rasterizer = MagicMock()
        rasterizer.rasterize.side_effect = RasterizationError('missing glyph')
        with self.assertRaises(RasterizationError):
            anim.render_gif(timed_frames(EVENTS), rasterizer, filename)
        self.assertEqual(os.listdir(self.directory), [])

    def test_write_failure(self):
        filename = os.path.join(self.directory, 'missing', 'demoterm.gif')
        with self.assertRaises(anim.EncoderError):
            anim.render_gif(timed_frames(EVENTS), Rasterizer((20, 5)), filename)

    def test_no_frames(self):
        filename = os.path.join(self.directory, 'demoterm.gif')
        with self.assertRaises(anim.EncoderError):
            anim.render_gif([], Rasterizer((20, 5)), filename)
        with self.assertRaises(anim.EncoderError):
            anim.render_svg([], ScreenLayout(20, 5), filename)
        self.assertEqual(os.listdir(self.directory), [])

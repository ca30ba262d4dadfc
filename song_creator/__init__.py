"""
Song Creator — guided audio interview that ends in a generated music video.

The package is a client: it talks to a generation backend over a websocket
channel (or plain REST calls), records and transcribes the user's answers, and
tracks the long-running generation job.  ``song_creator.server`` exposes the
session to a presentation layer.
"""

__version__ = "1.0.0"

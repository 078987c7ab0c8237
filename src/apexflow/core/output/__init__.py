from .text_output import OutputSink, StreamOutputSink, TextOutputController

__all__ = ["OutputSink", "StreamOutputSink", "TextOutputController"]

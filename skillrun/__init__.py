"""Step-by-step execution of programs that suspend on external skill actions, with stores, events and skill bundles."""

__version__ = "0.1.0"
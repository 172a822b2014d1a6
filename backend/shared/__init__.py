"""Process-agnostic building blocks shared by the watch-stats entry points."""

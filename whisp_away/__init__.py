"""
whisp-away: Voice-driven text entry

A background daemon that records the microphone on demand, transcribes the
recording with a resident Whisper model and types the text at the cursor
(or copies it to the clipboard). Independent `start`/`stop`/`toggle`
invocations talk to the daemon over a Unix socket.
"""

__version__ = "0.1.0"

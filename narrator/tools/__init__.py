from narrator.tools.speech import SpeechAudio, SpeechSynthesisError, SpeechSynthesizer
from narrator.tools.transcribe import AudioDecodingError, Transcriber

__all__ = [
    "AudioDecodingError",
    "SpeechAudio",
    "SpeechSynthesisError",
    "SpeechSynthesizer",
    "Transcriber",
]

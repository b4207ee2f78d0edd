"""
VoiceBlast

録音した音声メッセージを外部の音声一斉配信 API で一斉発信するバックエンド
"""

__version__ = "0.1.0"

from voiceblast.config import Config, ConfigurationError

__all__ = ["Config", "ConfigurationError"]

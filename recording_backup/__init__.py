"""
Call Recording Backup Service

PortaOne の通話録音をオブジェクトストレージへ日次でアーカイブするサービス
"""

__version__ = "0.1.0"

from recording_backup.config import Config, ConfigurationError

__all__ = ["Config", "ConfigurationError"]

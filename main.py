#!/usr/bin/env python3
"""
VoiceBlast アプリケーションエントリーポイント

.env と環境変数から設定を読み込み、検証したうえで
Flask 開発サーバーを起動します。

Usage:
    python main.py

Environment Variables (Required):
    - VOICE_BROADCAST_BASE_URL: 音声一斉配信 API のベース URL
    - VOICE_BROADCAST_API_USER: API ユーザー名
    - VOICE_BROADCAST_API_PASS: API パスワード

Environment Variables (Optional):
    - VOICE_BROADCAST_BLAST_URL: キャンペーン登録 URL (デフォルト: <ベース URL>/do_blast)
    - VOICE_BROADCAST_REPORT_URL: レポート取得 URL (デフォルト: <ベース URL>/get_report)
    - VOICE_BROADCAST_TIMEOUT: API タイムアウト（秒） (デフォルト: 60)
    - DEFAULT_CALLER_ID: 既定の発信者番号
    - DIAL_PREFIX: 国番号 (デフォルト: 88)
    - DATABASE_PATH: SQLite ファイル (デフォルト: voiceblast.db)
    - UPLOAD_DIR: 録音保存ディレクトリ (デフォルト: uploads)
    - MAX_UPLOAD_SIZE_MB: アップロード上限 (デフォルト: 50)
    - ALLOWED_MIME_TYPES: 受け付ける MIME タイプ（カンマ区切り）
    - FFMPEG_PATH / FFPROBE_PATH: ffmpeg / ffprobe 実行ファイル
    - CORS_ORIGIN: クライアントのオリジン (デフォルト: http://localhost:3000)
    - LOG_LEVEL: ログレベル (デフォルト: INFO)
    - HOST: サーバーホスト (デフォルト: 0.0.0.0)
    - PORT: サーバーポート (デフォルト: 5000)
    - DEBUG: デバッグモード (デフォルト: False)
"""

import os
import sys

from dotenv import load_dotenv

from voiceblast.app import create_app
from voiceblast.config import Config, ConfigurationError


def main() -> int:
    """
    アプリケーションのメインエントリーポイント

    Returns:
        int: 終了コード (0: 正常終了, 1: エラー終了)
    """
    try:
        load_dotenv()

        # Config.from_env() は内部で validate() を呼び出す
        print("設定を読み込んでいます...")
        config = Config.from_env()
        print("設定の読み込みが完了しました。")

        print("アプリケーションを初期化しています...")
        app = create_app(config)
        print("アプリケーションの初期化が完了しました。")

        host = os.environ.get("HOST", "0.0.0.0")
        port = int(os.environ.get("PORT", "5000"))
        debug = os.environ.get("DEBUG", "").lower() in ("true", "1", "yes")

        print(f"サーバーを起動しています... (host={host}, port={port}, debug={debug})")
        print(f"音声一斉配信 API: {config.broadcast_base_url}")
        print(f"録音保存先: {config.upload_dir}")
        print("サーバーを停止するには Ctrl+C を押してください。")

        app.run(host=host, port=port, debug=debug)

        return 0

    except ConfigurationError as e:
        print("\n[エラー] 設定エラーが発生しました:", file=sys.stderr)
        print(f"  {e}", file=sys.stderr)
        print("\n必要な環境変数を設定してから再度実行してください。", file=sys.stderr)
        print("\n必須の環境変数:", file=sys.stderr)
        print("  - VOICE_BROADCAST_BASE_URL: 音声一斉配信 API のベース URL", file=sys.stderr)
        print("  - VOICE_BROADCAST_API_USER: API ユーザー名", file=sys.stderr)
        print("  - VOICE_BROADCAST_API_PASS: API パスワード", file=sys.stderr)
        return 1

    except KeyboardInterrupt:
        print("\nサーバーを停止しました。")
        return 0

    except Exception as e:
        print("\n[エラー] 予期しないエラーが発生しました:", file=sys.stderr)
        print(f"  {type(e).__name__}: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())

import logging

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_DB_PATH = ".data/reviews.sqlite3"


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    環境変数から読み込まれる復習スケジューラの実行設定。
    - environment: 実行環境（development/staging/production など）
    - review_db_path: 復習状態を保存する SQLite のパス
    - write_behind_delay_ms: 遅延書き込みのデバウンス時間
    - profile_cache_seconds: 導出したユーザープロファイルの再利用時間

    アルゴリズムの数値パラメータ（ease 係数・間隔の上下限など）はここではなく
    ``ReviewSettings`` として永続化され、実行中に利用者が変更できる。
    """

    environment: str = Field(
        default="development",
        description="Runtime environment / 実行環境",
    )

    # --- データ永続化設定 ---
    review_db_path: str = Field(
        default=DEFAULT_DB_PATH,
        description="Path to SQLite database for review state / 復習状態用SQLite DBパス",
    )
    write_behind_delay_ms: int = Field(
        default=1000,
        description=(
            "Debounce delay before deferred writes are flushed (ms) / "
            "遅延書き込みをまとめて保存するまでの待ち時間(ms)"
        ),
    )

    # --- Scheduling defaults ---
    default_average_response_time: float = Field(
        default=45.0,
        description=(
            "Average response time assumed when no history exists (seconds) / "
            "履歴が無い場合に仮定する平均回答時間（秒）"
        ),
    )
    profile_cache_seconds: float = Field(
        default=300.0,
        description=(
            "How long a derived learner profile is reused (seconds, 0 disables) / "
            "全状態から導出したプロファイルを再利用する秒数（0 で毎回導出）"
        ),
    )

    # --- Operations/Observability ---
    log_level: str = Field(
        default="INFO",
        description="Log level for the stdlib root logger / ルートロガーのログレベル",
    )

    # --- Strict mode ---
    strict_mode: bool = Field(
        default=True,
        description="Fail fast on missing/invalid configuration (disable only for tests)",
    )

    # Pydantic v2 settings config
    # - env_file: .env を読み込む
    # - extra: .env に存在する未使用キーを無視
    # - case_sensitive: 環境変数キーの大小文字を区別しない
    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
        case_sensitive=False,
    )

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalise_log_level(cls, value: object) -> str:
        """Upper-case the level name and reject names unknown to ``logging``."""

        name = str(value or "INFO").strip().upper()
        if not isinstance(logging.getLevelName(name), int):
            raise ValueError(f"Unknown LOG_LEVEL: {value!r}")
        return name

    @model_validator(mode="after")
    def _validate_paths_and_delays(self) -> "Settings":
        """Reject configuration that cannot work before anything touches disk.

        STRICT_MODE=true では負の遅延・負のキャッシュ秒数・空の DB パスを設定読み込みの時点で拒否する。
        無効化時は既定値へ矯正して継続する。
        """

        if self.write_behind_delay_ms < 0:
            if self.strict_mode:
                raise ValueError("WRITE_BEHIND_DELAY_MS must be >= 0 when STRICT_MODE=true")
            self.write_behind_delay_ms = 0
        if self.profile_cache_seconds < 0:
            if self.strict_mode:
                raise ValueError("PROFILE_CACHE_SECONDS must be >= 0 when STRICT_MODE=true")
            self.profile_cache_seconds = 0.0
        if not (self.review_db_path or "").strip():
            if self.strict_mode:
                raise ValueError("REVIEW_DB_PATH must be set when STRICT_MODE=true")
            self.review_db_path = DEFAULT_DB_PATH
        return self


settings = Settings()

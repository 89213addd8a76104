import math
from typing import Annotated

from pydantic import AliasChoices, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic_settings.sources.types import NoDecode


# FSRS 系の 17 係数。index 0-3 は初回評価ごとの初期安定度（日）。
DEFAULT_SCHEDULER_WEIGHTS: tuple[float, ...] = (
    0.4072,
    1.1829,
    3.1262,
    15.4722,
    7.2102,
    0.5316,
    1.0651,
    0.0234,
    1.616,
    0.1544,
    1.0824,
    1.9813,
    0.0953,
    0.2975,
    2.2042,
    0.2407,
    2.9466,
)
_SCHEDULER_WEIGHT_COUNT = len(DEFAULT_SCHEDULER_WEIGHTS)


def _split_csv(raw: object) -> list[object] | None:
    if raw is None:
        return []
    if isinstance(raw, str):
        return raw.split(",")
    try:
        return list(raw)  # type: ignore[call-overload]
    except TypeError:
        return None


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    環境変数から読み込まれるスケジューラ/API 設定。
    - environment: 実行環境（development/staging/production など）
    - firestore_*: 永続層の接続先
    - scheduler_*: 記憶モデルの係数と間隔の上下限
    """

    environment: str = Field(
        default="development",
        description="Runtime environment / 実行環境",
    )
    log_level: str = Field(
        default="INFO",
        description="Root log level / ルートロガーのログレベル",
    )
    firestore_project_id: str | None = Field(
        default=None,
        description="Firestore project id / Firestore のプロジェクトID",
    )
    firestore_emulator_host: str | None = Field(
        default=None,
        description="Firestore emulator host (host:port) / Firestore エミュレータのホスト",
    )
    gcp_project_id: str | None = Field(
        default=None,
        description="GCP project id used for trace correlation / トレース紐付け用のGCPプロジェクトID",
        validation_alias=AliasChoices("gcp_project_id", "google_cloud_project"),
    )
    # なぜ: 認証は上流のゲートウェイが担うため、検証済みユーザーIDを運ぶヘッダ名だけを
    # 設定で受け取る。ヘッダ名を固定しないことで、配置先ごとの命名差を吸収する。
    user_id_header: str = Field(
        default="X-User-Id",
        description="Header carrying the authenticated user id / 認証済みユーザーIDを運ぶヘッダ名",
    )
    allowed_cors_origins: Annotated[tuple[str, ...], NoDecode] = Field(
        default=(),
        description=(
            "Comma separated CORS origins / CORS で許可するオリジンのカンマ区切り一覧"
        ),
        validation_alias=AliasChoices("allowed_cors_origins", "cors_allowed_origins"),
    )
    trusted_proxy_ips: Annotated[tuple[str, ...], NoDecode] = Field(
        default=("127.0.0.1",),
        description=(
            "Trusted proxy IPs/CIDR ranges for ProxyHeadersMiddleware / "
            "ProxyHeadersMiddleware に渡す信頼済みプロキシの IP または CIDR"
        ),
        validation_alias=AliasChoices("trusted_proxy_ips", "forwarded_allow_ips"),
    )

    # --- Scheduler ---
    scheduler_desired_retention: float = Field(
        default=0.9,
        description="Target recall probability at the next review / 次回復習時の目標想起確率",
    )
    scheduler_maximum_interval_days: float = Field(
        default=365.0,
        description="Upper bound for review intervals (days) / 復習間隔の上限（日）",
    )
    scheduler_minimum_interval_minutes: float = Field(
        default=10.0,
        description="Lower bound for non-lapse intervals (minutes) / 失念以外の間隔の下限（分）",
    )
    scheduler_relearning_step_minutes: float = Field(
        default=10.0,
        description="Interval after a lapse (minutes) / 失念直後の再出題間隔（分）",
    )
    scheduler_graduation_reps: int = Field(
        default=2,
        description=(
            "Consecutive successful reviews needed to leave learning / "
            "learning から review へ卒業するのに必要な連続成功回数"
        ),
    )
    scheduler_weights: Annotated[tuple[float, ...], NoDecode] = Field(
        default=DEFAULT_SCHEDULER_WEIGHTS,
        description="Memory model weights (17 values, comma separated) / 記憶モデルの係数",
    )
    scheduler_replay_limit: int = Field(
        default=50,
        description="Interactions replayed when rebuilding memory state / 再計算時に再生する解答履歴の件数",
    )

    metrics_window_size: int = Field(
        default=200,
        description="Latency samples kept per path / パスごとに保持するレイテンシ件数",
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

    @field_validator("allowed_cors_origins", "trusted_proxy_ips", mode="before")
    @classmethod
    def _normalise_csv_tuple(
        cls, raw_origins: object
    ) -> tuple[str, ...] | object:  # pragma: no cover - pydantic handles typing
        """Convert comma separated environment input into a deduplicated tuple.

        なぜ: CORS オリジンやプロキシ IP を `.env` で管理するときに空白や重複が
        混ざりやすいため、ミドルウェアへ渡す前にトリムと重複排除を行う。
        """

        candidates = _split_csv(raw_origins)
        if candidates is None:
            return raw_origins
        # dict.fromkeys で初出順を保ったまま重複を落とす
        stripped = (item.strip() for item in candidates if isinstance(item, str))
        return tuple(dict.fromkeys(item for item in stripped if item))

    @field_validator("scheduler_weights", mode="before")
    @classmethod
    def _parse_scheduler_weights(cls, raw_weights: object) -> tuple[float, ...] | object:
        """Accept comma separated weights from the environment.

        空文字や未設定は既定の係数へフォールバックする。
        """

        candidates = _split_csv(raw_weights)
        if candidates is None:
            return raw_weights
        cleaned = [
            str(candidate).strip()
            for candidate in candidates
            if str(candidate).strip()
        ]
        if not cleaned:
            return DEFAULT_SCHEDULER_WEIGHTS
        try:
            return tuple(float(value) for value in cleaned)
        except ValueError as exc:
            raise ValueError("SCHEDULER_WEIGHTS must be comma separated numbers") from exc

    @field_validator("user_id_header", mode="after")
    @classmethod
    def _validate_user_id_header(cls, value: str) -> str:
        header = (value or "").strip()
        if not header:
            raise ValueError("USER_ID_HEADER must not be empty")
        return header

    @model_validator(mode="after")
    def _validate_scheduler(self) -> "Settings":
        """Reject scheduler parameters that would produce degenerate intervals.

        なぜ: 目標想起率が 0 や 1 だと間隔計算の対数が発散し、全カードが
        即時出題または永久に出題されない状態になる。起動時に検出して止める。
        """

        if not 0.0 < self.scheduler_desired_retention < 1.0:
            raise ValueError("SCHEDULER_DESIRED_RETENTION must be between 0 and 1 (exclusive)")
        if self.scheduler_maximum_interval_days <= 0:
            raise ValueError("SCHEDULER_MAXIMUM_INTERVAL_DAYS must be positive")
        if self.scheduler_minimum_interval_minutes <= 0:
            raise ValueError("SCHEDULER_MINIMUM_INTERVAL_MINUTES must be positive")
        if self.scheduler_minimum_interval_minutes / 1440.0 > self.scheduler_maximum_interval_days:
            raise ValueError("minimum interval must not exceed maximum interval")
        if self.scheduler_relearning_step_minutes <= 0:
            raise ValueError("SCHEDULER_RELEARNING_STEP_MINUTES must be positive")
        if self.scheduler_graduation_reps < 1:
            raise ValueError("SCHEDULER_GRADUATION_REPS must be at least 1")
        if self.scheduler_replay_limit < 1:
            raise ValueError("SCHEDULER_REPLAY_LIMIT must be at least 1")
        if len(self.scheduler_weights) != _SCHEDULER_WEIGHT_COUNT:
            raise ValueError(
                f"SCHEDULER_WEIGHTS must contain exactly {_SCHEDULER_WEIGHT_COUNT} values"
            )
        if not all(math.isfinite(weight) for weight in self.scheduler_weights):
            raise ValueError("SCHEDULER_WEIGHTS must be finite numbers")
        if any(weight <= 0 for weight in self.scheduler_weights[:4]):
            raise ValueError("initial stability weights must be positive")
        # 評価が高いほど安定度の伸びが大きくなるよう Hard <= Good(1.0) <= Easy を強制する
        hard_modifier, easy_modifier = self.scheduler_weights[15], self.scheduler_weights[16]
        if not 0.0 < hard_modifier <= 1.0 <= easy_modifier:
            raise ValueError(
                "SCHEDULER_WEIGHTS must satisfy 0 < w15 <= 1 <= w16 (hard/easy modifiers)"
            )
        return self


settings = Settings()

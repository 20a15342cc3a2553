"""
应用配置模块

使用 Pydantic Settings 管理所有环境变量和配置。
配置从项目根目录的 .env 文件读取，支持类型验证和默认值。

配置分组：
- 基础：API 前缀、JWT 密钥、运行环境、CORS、Sentry
- 数据库：PostgreSQL 连接参数
- 订单：税率、货到付款手续费、配送时效、乐观锁重试次数
- 支付网关：Paymee / Flouci / D17 / Konnect 的凭证和开关
- 通知渠道：SMTP 邮件、短信服务商、Web Push (VAPID)
"""
import secrets  # 用于生成安全的随机字符串
import warnings  # 用于发出警告
from decimal import Decimal  # 金额类配置使用 Decimal
from typing import Annotated, Any, Literal  # 类型注解工具

from pydantic import (
    AnyUrl,  # URL 类型验证
    BeforeValidator,  # 字段验证前的转换器
    HttpUrl,  # HTTP URL 类型验证
    PostgresDsn,  # PostgreSQL 连接字符串验证
    computed_field,  # 计算字段装饰器
    model_validator,  # 模型验证器装饰器
)
from pydantic_settings import BaseSettings, SettingsConfigDict  # 配置管理
from typing_extensions import Self  # 用于类型注解中引用自身类型


def parse_cors(v: Any) -> list[str] | str:
    """
    解析 CORS 配置值

    支持逗号分隔的字符串或列表两种格式。

    Args:
        v: 输入的配置值（字符串或列表）

    Returns:
        解析后的列表或字符串

    Raises:
        ValueError: 当输入格式不正确时
    """
    if isinstance(v, str) and not v.startswith("["):
        return [i.strip() for i in v.split(",") if i.strip()]
    elif isinstance(v, list | str):
        return v
    raise ValueError(v)


class Settings(BaseSettings):
    """
    应用配置类

    配置来源优先级：
    1. 环境变量（最高优先级）
    2. .env 文件
    3. 代码中的默认值（最低优先级）
    """
    model_config = SettingsConfigDict(
        # 使用项目根目录的 .env 文件（backend/ 目录的上一级）
        env_file="../.env",
        env_ignore_empty=True,  # 忽略空的环境变量
        extra="ignore",  # 忽略未定义的额外字段
    )
    API_V1_STR: str = "/api/v1"  # API 版本前缀
    SECRET_KEY: str = secrets.token_urlsafe(32)  # JWT 签名密钥（默认随机生成）
    ENVIRONMENT: Literal["local", "staging", "production"] = "local"
    LOG_LEVEL: str = "INFO"

    BACKEND_CORS_ORIGINS: Annotated[
        list[AnyUrl] | str, BeforeValidator(parse_cors)
    ] = []

    @computed_field  # type: ignore[prop-decorator]
    @property
    def all_cors_origins(self) -> list[str]:
        """CORS 允许的源（去除尾部斜杠）"""
        return [str(origin).rstrip("/") for origin in self.BACKEND_CORS_ORIGINS]

    PROJECT_NAME: str = "STES Fulfillment"
    SENTRY_DSN: HttpUrl | None = None

    # Snowflake
    SNOWFLAKE_NODE_ID: int = 0

    POSTGRES_SERVER: str = "localhost"
    POSTGRES_PORT: int = 5432
    POSTGRES_USER: str = "postgres"
    POSTGRES_PASSWORD: str = ""
    POSTGRES_DB: str = "fulfillment"

    @computed_field  # type: ignore[prop-decorator]
    @property
    def SQLALCHEMY_DATABASE_URI(self) -> PostgresDsn:
        return PostgresDsn.build(
            scheme="postgresql+psycopg",
            username=self.POSTGRES_USER,
            password=self.POSTGRES_PASSWORD,
            host=self.POSTGRES_SERVER,
            port=self.POSTGRES_PORT,
            path=self.POSTGRES_DB,
        )

    # 前后端地址（用于支付回调地址、邮件中的追踪链接）
    FRONTEND_URL: str = "http://localhost:3000"
    BACKEND_URL: str = "http://localhost:8000"

    # 外部 HTTP 调用超时（秒），超时即视为失败
    HTTP_TIMEOUT_SECONDS: float = 10.0

    # 订单定价与配送
    CURRENCY: str = "TND"
    TAX_RATE: Decimal = Decimal("0.19")  # 增值税率
    BASE_SHIPPING_COST: Decimal = Decimal("7")  # 基础运费（TND）
    DEFAULT_CITY_SHIPPING_RATE: Decimal = Decimal("1.3")  # 未配置城市的运费系数
    COD_FEE: Decimal = Decimal("5")  # 货到付款手续费
    DELIVERY_DAYS_NORMAL: int = 4  # 普通订单预计送达（工作日）
    DELIVERY_DAYS_URGENT: int = 2  # 加急订单预计送达（工作日）

    # 订单更新乐观锁冲突时的最大尝试次数
    ORDER_UPDATE_MAX_RETRIES: int = 5

    # 支付
    PAYMENT_MAX_ATTEMPTS: int = 3

    # Paymee
    PAYMEE_ENABLED: bool = False
    PAYMEE_API_KEY: str | None = None
    PAYMEE_BASE_URL: str = "https://api.paymee.tn"

    # Flouci
    FLOUCI_ENABLED: bool = False
    FLOUCI_APP_TOKEN: str | None = None
    FLOUCI_APP_SECRET: str | None = None
    FLOUCI_BASE_URL: str = "https://developers.flouci.com/api"
    FLOUCI_SESSION_TIMEOUT_SECONDS: int = 1200

    # D17 (La Poste Tunisienne)
    D17_ENABLED: bool = False
    D17_MERCHANT_ID: str | None = None
    D17_SECRET_KEY: str | None = None  # HMAC 签名密钥
    D17_BASE_URL: str = "https://api.d17.tn"

    # Konnect
    KONNECT_ENABLED: bool = False
    KONNECT_API_KEY: str | None = None
    KONNECT_RECEIVER_ID: str | None = None
    KONNECT_BASE_URL: str = "https://api.konnect.network"
    KONNECT_LIFESPAN_MINUTES: int = 10

    # SMTP 邮件服务器配置（用于发送邮件）
    SMTP_TLS: bool = True  # 是否使用 TLS
    SMTP_SSL: bool = False  # 是否使用 SSL
    SMTP_PORT: int = 587  # SMTP 端口
    SMTP_HOST: str | None = None  # SMTP 服务器地址
    SMTP_USER: str | None = None  # SMTP 用户名
    SMTP_PASSWORD: str | None = None  # SMTP 密码
    EMAILS_FROM_EMAIL: str | None = None  # 发件人邮箱
    EMAILS_FROM_NAME: str | None = None  # 发件人名称

    @computed_field  # type: ignore[prop-decorator]
    @property
    def emails_enabled(self) -> bool:
        return bool(self.SMTP_HOST and self.EMAILS_FROM_EMAIL)

    # 短信服务商（按 Tunisie Telecom -> Orange -> Twilio 顺序选择第一个已配置的）
    SMS_SENDER_NAME: str = "STES"
    TUNISIE_TELECOM_API_KEY: str | None = None
    TUNISIE_TELECOM_BASE_URL: str = "https://api.tunisietelecom.tn/sms"
    ORANGE_SMS_TOKEN: str | None = None
    ORANGE_SMS_SENDER_ADDRESS: str | None = None
    ORANGE_SMS_BASE_URL: str = "https://api.orange.com/smsmessaging/v1"
    TWILIO_ACCOUNT_SID: str | None = None
    TWILIO_AUTH_TOKEN: str | None = None
    TWILIO_PHONE_NUMBER: str | None = None
    TWILIO_BASE_URL: str = "https://api.twilio.com/2010-04-01"

    # Web Push (VAPID)
    VAPID_PUBLIC_KEY: str | None = None
    VAPID_PRIVATE_KEY: str | None = None
    VAPID_SUBJECT: str = "mailto:admin@stes.tn"
    PUSH_TTL_SECONDS: int = 24 * 60 * 60

    def _check_default_secret(self, var_name: str, value: str | None) -> None:
        """
        检查敏感配置是否使用了默认值

        本地环境只警告，其他环境直接报错。

        Raises:
            ValueError: 在非本地环境使用默认值时
        """
        if value == "changethis":
            message = (
                f'The value of {var_name} is "changethis", '
                "for security, please change it, at least for deployments."
            )
            if self.ENVIRONMENT == "local":
                warnings.warn(message, stacklevel=1)
            else:
                raise ValueError(message)

    @model_validator(mode="after")
    def _enforce_non_default_secrets(self) -> Self:
        self._check_default_secret("SECRET_KEY", self.SECRET_KEY)
        self._check_default_secret("POSTGRES_PASSWORD", self.POSTGRES_PASSWORD)
        return self


# 创建全局配置实例，整个应用共享
settings = Settings()  # type: ignore

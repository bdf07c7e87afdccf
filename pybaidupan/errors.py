"""Error catalogs and exception types for the BaiduPan client.

The service reports failures as numeric codes. Two catalogs map those codes
to human-readable messages: one for general file operations and one for the
login flow. The exception classes below carry the code so callers can branch
on it even when the catalog has no message for it.
"""

from __future__ import annotations

from enum import Enum
from types import MappingProxyType
from typing import ClassVar, Mapping

UNKNOWN_ERROR_MESSAGE = "Unknown error"

# Login error code that asks for a captcha
CAPTCHA_REQUIRED_CODE = 257


class ErrorCatalogVariant(str, Enum):
    """Which catalog a coded error is resolved against."""

    GENERAL = "general"
    LOGIN = "login"


_GENERAL_MESSAGES: dict[int, str] = {
    0: "成功",
    1: "服务器错误",
    2: "接口请求错误，请稍候重试",
    3: "一次操作文件不可超过100个",
    4: "新文件名错误",
    5: "目标目录非法",
    6: "备用",
    7: "NS非法或无权访问",
    8: "ID非法或无权访问",
    9: "申请key失败",
    10: "创建文件的superfile失败",
    11: "user_id(或user_name)非法或不存在",
    12: "部分文件已存在于目标文件夹中",
    13: "此目录无法共享",
    14: "系统错误",
    15: "操作失败",
    102: "无权限操作该目录",
    103: "提取码错误",
    104: "验证cookie无效",
    111: "当前还有未完成的任务，需完成后才能操作",
    112: "页面已过期，请刷新后重试",
    132: "删除文件需要验证您的身份",
    201: "系统错误",
    202: "系统错误",
    203: "系统错误",
    204: "系统错误",
    205: "系统错误",
    211: "无权操作或被封禁",
    301: "其他请求出错",
    404: "秒传md5不匹配 rapidupload 错误码",
    406: "秒传创建文件失败 rapidupload 错误码",
    407: "fileModify接口返回错误，未返回requestid rapidupload 错误码",
    501: "获取的LIST格式非法",
    600: "json解析出错",
    601: "exception抛出异常",
    617: "getFilelist其他错误",
    618: "请求curl返回失败",
    619: "pcs返回错误码",
    1024: "云冲印购物车文件15日内无法删除",
    9100: "你的帐号存在违规行为，已被冻结",
    9200: "你的帐号存在违规行为，已被冻结",
    9300: "你的帐号存在违规行为，该功能暂被冻结",
    9400: "你的帐号异常，需验证后才能使用该功能",
    9500: "你的帐号存在安全风险，已进入保护模式，请修改密码后使用",
    31021: "网络连接失败，请检查网络或稍候再试",
    31075: "一次支持操作999个，减点试试吧",
    31080: "我们的服务器出错了，稍候试试吧",
    31116: "你的空间不足了哟，赶紧购买空间吧",
    -1: "用户名和密码验证失败",
    -2: "备用",
    -3: "用户未激活（调用init接口）",
    -4: "COOKIE中未找到host_key&user_key（或BDUSS）",
    -5: "host_key和user_key无效",
    -6: "登录失败，请重新登录",
    -7: "文件或目录名错误或无权访问",
    -8: "该目录下已存在此文件",
    -9: "文件被所有者删除，操作失败",
    -10: "你的空间不足了哟",
    -11: "父目录不存在",
    -12: "设备尚未注册",
    -13: "设备已经被绑定",
    -14: "帐号已经初始化",
    -21: "预置文件无法进行相关操作",
    -22: "被分享的文件无法重命名，移动等操作",
    -23: "数据库操作失败，请联系netdisk管理员",
    -24: "要取消的文件列表中含有不允许取消public的文件。",
    -25: "非公测用户",
    -26: "邀请码失效",
    -32: "你的空间不足了哟",
    -102: "云冲印文件7日内无法删除",
}

_LOGIN_MESSAGES: dict[int, str] = {
    1: "您输入的帐号格式不正确",
    2: "您输入的帐号不存在",
    3: "验证码不存在或已过期,请重新输入",
    4: "您输入的帐号或密码有误",
    6: "您输入的验证码有误",
    7: "密码错误",
    16: "您的帐号因安全问题已被限制登录",
    17: "您的帐号已锁定",
    21: "没有登录权限",
    CAPTCHA_REQUIRED_CODE: "请输入验证码",
    50023: "1个手机号30日内最多换绑3个账号",
    50024: "注册过于频繁，请稍候再试",
    50025: "注册过于频繁，请稍候再试；也可以通过上行短信的方式进行注册",
    100005: "系统错误,请您稍后再试",
    100023: "开启Cookie之后才能登录",
    100027: "百度正在进行系统升级，暂时不能提供服务，敬请谅解",
    110024: "此帐号暂未激活",
    120019: "请在弹出的窗口操作,或重新登录",
    120021: "登录失败,请在弹出的窗口操作,或重新登录",
    200010: "验证码不存在或已过期",
    400031: "请在弹出的窗口操作,或重新登录",
    400414: "您的帐号因为安全问题，暂时被冻结，详情请拨打电话010-59059588",
    400415: "您的帐号因为安全问题，暂时被冻结，详情请拨打电话010-59059588",
    401007: "您的手机号关联了其他帐号，请选择登录",
    500010: "登录过于频繁,请24小时后再试",
    -1: "系统错误,请您稍后再试",
}

ERROR_CATALOGS: Mapping[ErrorCatalogVariant, Mapping[int, str]] = MappingProxyType(
    {
        ErrorCatalogVariant.GENERAL: MappingProxyType(_GENERAL_MESSAGES),
        ErrorCatalogVariant.LOGIN: MappingProxyType(_LOGIN_MESSAGES),
    }
)


def lookup(code: int, variant: ErrorCatalogVariant = ErrorCatalogVariant.GENERAL) -> str:
    """Resolve an error code to its message, or "Unknown error" if unmapped."""
    return ERROR_CATALOGS[variant].get(code, UNKNOWN_ERROR_MESSAGE)


def is_known(code: int, variant: ErrorCatalogVariant = ErrorCatalogVariant.GENERAL) -> bool:
    """Check whether the catalog has a message for a code."""
    return code in ERROR_CATALOGS[variant]


class BaiduPanError(Exception):
    """Base exception for all BaiduPan client errors."""

    pass


class ConnectivityError(BaiduPanError):
    """Raised on transport failures and unexpected HTTP statuses."""

    pass


class FormatError(BaiduPanError):
    """Raised when a response does not have the expected structure."""

    pass


class ConfigError(BaiduPanError):
    """Raised when configuration loading/saving fails."""

    pass


class NotFoundError(BaiduPanError, FileNotFoundError):
    """Raised when a path is not present in its parent directory listing."""

    pass


class CodedError(BaiduPanError):
    """Base exception for errors reported by the service with a numeric code.

    Attributes:
        code: The error code returned by the service.
        message: Message resolved from the catalog of this error's variant.
    """

    variant: ClassVar[ErrorCatalogVariant] = ErrorCatalogVariant.GENERAL

    def __init__(self, code: int) -> None:
        self.code = code
        self.message = lookup(code, self.variant)
        super().__init__(f"[{code}] {self.message}")

    @property
    def is_unknown(self) -> bool:
        """True if the catalog has no message for this code."""
        return not is_known(self.code, self.variant)


class RemoteError(CodedError):
    """Raised when a file or quota operation is rejected by the service."""

    variant = ErrorCatalogVariant.GENERAL


class AuthError(CodedError):
    """Raised when the service rejects a login attempt."""

    variant = ErrorCatalogVariant.LOGIN

"""
Flagging Engine — 数值 vs 参考范围 → Low / Normal / High。

classify() 和 select_config() 是纯函数，只看传进来的 config 快照；
calculate_flag() 负责唯一一次 DB 查询，然后交给纯函数。

规则（边界包含在 Normal 内）：
    value < min  → Low
    value > max  → High
    其他         → Normal

查不到 config 或 value 为空 → DEFAULT_FLAG（Normal）。
"""

import logging
from collections import defaultdict

from .models import Flag, FlaggingConfig

logger = logging.getLogger(__name__)

DEFAULT_FLAG = Flag.NORMAL


def _normalize_gender(gender):
    return (gender or '').strip().lower() or None


def classify(value, config):
    if value is None or config is None:
        return DEFAULT_FLAG
    if value < config.min:
        return Flag.LOW
    if value > config.max:
        return Flag.HIGH
    return Flag.NORMAL


def select_config(configs, gender):
    """
    在同一个 test_code 的 active configs 里挑一条。

    性别专属的行优先于通用行（gender=None）；同一类里 version 最高的胜出。
    病人没有性别信息时只能用通用行。
    """
    wanted = _normalize_gender(gender)
    specific = []
    general = []
    for config in configs:
        config_gender = _normalize_gender(config.gender)
        if config_gender is None:
            general.append(config)
        elif wanted is not None and config_gender == wanted:
            specific.append(config)

    for bucket in (specific, general):
        if bucket:
            return max(bucket, key=lambda c: c.version)
    return None


def load_config_snapshot(test_codes):
    """一次查出这些 test_code 的全部 active config：{test_code: [config, ...]}。"""
    snapshot = defaultdict(list)
    for config in FlaggingConfig.objects.filter(test_code__in=set(test_codes), is_active=True):
        snapshot[config.test_code].append(config)
    return snapshot


def flag_from_snapshot(snapshot, test_code, value, gender):
    if value is None:
        return DEFAULT_FLAG

    config = select_config(snapshot.get(test_code, []), gender)
    if config is None:
        logger.warning(
            "[Flagging] no active config for test_code=%s gender=%s, defaulting to %s",
            test_code, gender, DEFAULT_FLAG,
        )
        return DEFAULT_FLAG

    return classify(value, config)


def calculate_flag(test_code, value, gender):
    return flag_from_snapshot(load_config_snapshot([test_code]), test_code, value, gender)


def resolve_result_status(flag, instrument_status):
    """
    计算出的 flag 说了算，仪器上报的 status 只作参考。
    两者不一致时记一条 debug 日志，方便以后排查仪器端的判定。
    """
    if instrument_status and str(instrument_status).casefold() != str(flag).casefold():
        logger.debug(
            "[Flagging] instrument status %r overridden by computed flag %r",
            instrument_status, str(flag),
        )
    return str(flag)

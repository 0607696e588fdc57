import logging
import re
from datetime import datetime
from enum import Enum
from typing import List, Optional, Tuple, Union

from signal_loader.jobs.common.time_window import TimeWindow, to_epoch_seconds
from signal_loader.jobs.exceptions import InvalidArgument
from signal_loader.jobs.utils.logging_config import truncate_for_log

logger = logging.getLogger(__name__)

FROM_TIME_PLACEHOLDER = ':fromTime'
TO_TIME_PLACEHOLDER = ':toTime'

_STR_TO_DATE_PATTERN = re.compile(r'STR_TO_DATE', re.IGNORECASE)
_MILLIS_PATTERN = re.compile(r'epoch_ms|_millis', re.IGNORECASE)
_UNIX_TIMESTAMP_PATTERN = re.compile(r'UNIX_TIMESTAMP|FROM_UNIXTIME|timestamp_unix|epoch', re.IGNORECASE)
_TIMESTAMP_KEYWORD_PATTERN = re.compile(
    r'TIMESTAMP\s+[\'"]|TO_TIMESTAMP|CAST\s*\(.*AS\s+TIMESTAMP', re.IGNORECASE | re.DOTALL
)
_PLACEHOLDER_PATTERN = re.compile(r':(?:fromTime|toTime)')


class TimestampFormat(Enum):
    """Literal shapes a window bound can take inside job SQL"""
    ISO_8601 = 'ISO_8601'
    MYSQL_DATETIME = 'MYSQL_DATETIME'
    UNIX_EPOCH_SECONDS = 'UNIX_EPOCH_SECONDS'
    UNIX_EPOCH_MILLIS = 'UNIX_EPOCH_MILLIS'

    def format(self, value: datetime) -> str:
        if self is TimestampFormat.ISO_8601:
            return value.strftime('%Y-%m-%dT%H:%M:%SZ')
        if self is TimestampFormat.MYSQL_DATETIME:
            return value.strftime('%Y-%m-%d %H:%M')
        if self is TimestampFormat.UNIX_EPOCH_SECONDS:
            return str(to_epoch_seconds(value))
        return str(to_epoch_seconds(value) * 1000 + value.microsecond // 1000)

    def truncate(self, value: datetime) -> datetime:
        """The instant the formatted literal actually denotes"""
        if self is TimestampFormat.MYSQL_DATETIME:
            return value.replace(second=0, microsecond=0)
        if self is TimestampFormat.UNIX_EPOCH_MILLIS:
            return value.replace(microsecond=value.microsecond // 1000 * 1000)
        return value.replace(microsecond=0)


def _coerce_format(fmt: Union[TimestampFormat, str]) -> TimestampFormat:
    if isinstance(fmt, TimestampFormat):
        return fmt
    if isinstance(fmt, str):
        try:
            return TimestampFormat[fmt.strip().upper()]
        except KeyError:
            pass
    raise InvalidArgument(f"Unknown timestamp format: {fmt!r}")


def _validate_inputs(sql: Optional[str], window: Optional[TimeWindow]):
    if sql is None:
        raise InvalidArgument('SQL cannot be None')
    if not sql.strip():
        raise InvalidArgument('SQL cannot be blank')
    if window is None:
        raise InvalidArgument('TimeWindow cannot be None')
    if not isinstance(window, TimeWindow):
        raise InvalidArgument(f"Expected a TimeWindow, got {type(window).__name__}")

    if FROM_TIME_PLACEHOLDER not in sql and TO_TIME_PLACEHOLDER not in sql:
        logger.warning(f"SQL does not contain :fromTime or :toTime placeholders. SQL: {truncate_for_log(sql)}")


def detect_format(sql: str) -> TimestampFormat:
    """
    Guess the literal format a query expects from the functions it uses.

    STR_TO_DATE wins first since it wraps the placeholders directly; epoch
    hints may only appear in the SELECT list.
    """
    if _STR_TO_DATE_PATTERN.search(sql):
        return TimestampFormat.MYSQL_DATETIME
    if _MILLIS_PATTERN.search(sql):
        return TimestampFormat.UNIX_EPOCH_MILLIS
    if _UNIX_TIMESTAMP_PATTERN.search(sql):
        return TimestampFormat.UNIX_EPOCH_SECONDS
    if _TIMESTAMP_KEYWORD_PATTERN.search(sql):
        return TimestampFormat.ISO_8601
    return TimestampFormat.ISO_8601


def find_placeholders(sql: str) -> List[str]:
    """All reserved placeholder occurrences, in order of appearance"""
    if not sql:
        return []
    return _PLACEHOLDER_PATTERN.findall(sql)


def substitute(sql: str, window: TimeWindow, fmt: Optional[Union[TimestampFormat, str]] = None) -> str:
    """
    Replace every :fromTime / :toTime occurrence with a literal.

    Args:
        sql: Job query text
        window: Window whose bounds are inserted
        fmt: Literal format; auto-detected from the SQL when omitted

    Returns:
        SQL text with all placeholders replaced; everything else is untouched

    Raises:
        InvalidArgument: SQL missing or blank, window missing, or unknown format
    """
    _validate_inputs(sql, window)

    if fmt is None:
        fmt = detect_format(sql)
        logger.info(f"Auto-detected timestamp format: {fmt.value} for SQL: {truncate_for_log(sql)}")
    else:
        fmt = _coerce_format(fmt)

    from_value = fmt.format(window.from_time)
    to_value = fmt.format(window.to_time)

    result = sql.replace(FROM_TIME_PLACEHOLDER, from_value)
    result = result.replace(TO_TIME_PLACEHOLDER, to_value)

    logger.debug(f"Replaced placeholders: :fromTime={from_value}, :toTime={to_value}")
    return result


def substitute_with_offset(sql: str,
                           window: TimeWindow,
                           offset_hours: Optional[int],
                           fmt: Optional[Union[TimestampFormat, str]] = None
                           ) -> Tuple[str, TimeWindow, TimestampFormat]:
    """
    Substitute placeholders using the source's local clock.

    A source at UTC+4 stores 10:00 for 14:00 UTC, so the UTC window is moved
    back by the offset before formatting. The returned window is truncated to
    the precision of the format, so it is exactly the range the source sees.

    Returns:
        (substituted SQL, source-local window, format used)
    """
    _validate_inputs(sql, window)

    resolved = _coerce_format(fmt) if fmt is not None else detect_format(sql)
    shifted = window.shifted(-(offset_hours or 0))
    local_window = TimeWindow(resolved.truncate(shifted.from_time), resolved.truncate(shifted.to_time))

    if offset_hours:
        logger.info(
            f"Applying timezone offset {offset_hours} hours: UTC window {window} -> source window {local_window}"
        )

    return substitute(sql, local_window, resolved), local_window, resolved

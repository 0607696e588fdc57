import logging
from dataclasses import dataclass, asdict
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional, Sequence

from signal_loader.jobs.exceptions import InvalidArgument, TransformationError

logger = logging.getLogger(__name__)

# Epoch values above this (year ~5000 in seconds) are taken to be milliseconds
MILLIS_THRESHOLD = 94608000000

SEGMENT_SEPARATOR = '|'

TIMESTAMP_COLUMNS = ('timestamp', 'load_time_stamp', 'ts', 'time')
SEGMENT_COLUMNS = tuple((f'seg{n}', f'segment{n}', f'segment_{n}') for n in range(1, 11))
SEGMENT_KEY_COLUMNS = ('segment_key', 'segment')
REC_COUNT_COLUMNS = ('rec_count', 'record_count', 'count', 'cnt')
MAX_VAL_COLUMNS = ('max_val', 'max', 'maximum')
MIN_VAL_COLUMNS = ('min_val', 'min', 'minimum')
AVG_VAL_COLUMNS = ('avg_val', 'avg', 'average')
SUM_VAL_COLUMNS = ('sum_val', 'sum', 'total')


@dataclass
class SignalData:
    """Canonical signal shape produced from one source row"""
    job_code: str
    load_timestamp: int
    segment_key: Optional[str] = None
    rec_count: Optional[int] = None
    min_val: Optional[float] = None
    max_val: Optional[float] = None
    avg_val: Optional[float] = None
    sum_val: Optional[float] = None

    @property
    def natural_key(self):
        return self.job_code, self.load_timestamp, self.segment_key

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


_MISSING = object()


def _find_value(row: Dict[str, Any], column_names: Sequence[str]) -> Any:
    """Exact column name first, then a case-insensitive match, per variant"""
    for name in column_names:
        if name in row:
            return row[name]
        for key, value in row.items():
            if isinstance(key, str) and key.lower() == name.lower():
                return value
    return _MISSING


def _epoch_from_number(value) -> int:
    epoch = int(value)
    if epoch > MILLIS_THRESHOLD:
        return epoch // 1000
    return epoch


class SignalTransformer:
    """Maps heterogeneous result rows into SignalData records"""

    def transform(self, job_code: str, rows: Optional[Iterable[Dict[str, Any]]],
                  offset_hours: Optional[int] = 0) -> List[SignalData]:
        """
        Transform source rows, normalizing timestamps to UTC.

        Args:
            job_code: Code of the job the rows belong to
            rows: Column-name -> value mappings, as returned by a DictCursor
            offset_hours: Source timezone offset; added to every timestamp

        Returns:
            One SignalData per row, in row order

        Raises:
            TransformationError: any row cannot be transformed
        """
        if not job_code or not job_code.strip():
            raise InvalidArgument('Job code cannot be None or blank')
        if rows is None:
            raise InvalidArgument('Rows cannot be None')

        offset_seconds = (offset_hours or 0) * 3600
        if offset_seconds:
            logger.info(f"Normalizing timestamps to UTC: adding {offset_hours} hours to source timestamps")

        results = []
        for index, row in enumerate(rows):
            try:
                results.append(self._transform_row(job_code, row, index, offset_seconds))
            except TransformationError:
                raise
            except Exception as e:
                raise TransformationError(
                    f"Failed to transform row {index} for job {job_code}: {e}", row_index=index
                ) from e

        logger.debug(f"Transformed {len(results)} rows for job {job_code} (offset={offset_hours or 0}h)")
        return results

    def _transform_row(self, job_code: str, row: Dict[str, Any], index: int, offset_seconds: int) -> SignalData:
        if not isinstance(row, dict):
            raise TransformationError(f"Row {index} is not a mapping: {type(row).__name__}", row_index=index)

        load_timestamp = self._extract_timestamp(row, index) + offset_seconds

        return SignalData(
            job_code=job_code,
            load_timestamp=load_timestamp,
            segment_key=self._extract_segment_key(row),
            rec_count=self._extract_int(row, REC_COUNT_COLUMNS),
            max_val=self._extract_float(row, MAX_VAL_COLUMNS),
            min_val=self._extract_float(row, MIN_VAL_COLUMNS),
            avg_val=self._extract_float(row, AVG_VAL_COLUMNS),
            sum_val=self._extract_float(row, SUM_VAL_COLUMNS),
        )

    def _extract_timestamp(self, row: Dict[str, Any], index: int) -> int:
        value = _find_value(row, TIMESTAMP_COLUMNS)
        if value is _MISSING or value is None:
            raise TransformationError(
                f"Missing required field 'timestamp' in row {index}. "
                f"Expected one of: {', '.join(TIMESTAMP_COLUMNS)}",
                row_index=index,
            )

        try:
            if isinstance(value, bool):
                raise TransformationError(f"Unsupported timestamp type in row {index}: bool", row_index=index)
            if isinstance(value, datetime):
                # Naive values are the source's local clock; the offset is applied by the caller
                if value.tzinfo is None:
                    value = value.replace(tzinfo=timezone.utc)
                return int(value.timestamp())
            if isinstance(value, date):
                return int(datetime(value.year, value.month, value.day, tzinfo=timezone.utc).timestamp())
            if isinstance(value, (int, float, Decimal)):
                return _epoch_from_number(value)
            if isinstance(value, bytes):
                value = value.decode('utf-8')
            if isinstance(value, str):
                text = value.strip()
                try:
                    return _epoch_from_number(Decimal(text))
                except InvalidOperation:
                    pass
                parsed = datetime.fromisoformat(text.replace('Z', '+00:00'))
                if parsed.tzinfo is None:
                    parsed = parsed.replace(tzinfo=timezone.utc)
                return int(parsed.timestamp())
        except TransformationError:
            raise
        except (ValueError, OverflowError) as e:
            raise TransformationError(f"Failed to parse timestamp in row {index}: {value!r}",
                                      row_index=index) from e

        raise TransformationError(
            f"Unsupported timestamp type in row {index}: {type(value).__name__} (value: {value!r})",
            row_index=index,
        )

    def _extract_segment_key(self, row: Dict[str, Any]) -> Optional[str]:
        segments = []
        for variants in SEGMENT_COLUMNS:
            value = _find_value(row, variants)
            if value is not _MISSING and value is not None:
                segments.append(str(value))

        if segments:
            return SEGMENT_SEPARATOR.join(segments)

        value = _find_value(row, SEGMENT_KEY_COLUMNS)
        if value is _MISSING or value is None:
            return None
        return str(value)

    def _extract_int(self, row: Dict[str, Any], columns: Sequence[str]) -> Optional[int]:
        value = _find_value(row, columns)
        if value is _MISSING or value is None:
            return None
        if isinstance(value, bool):
            logger.warning(f"Unexpected type for integer field {columns[0]}: bool (value: {value})")
            return None
        try:
            if isinstance(value, (int, float, Decimal)):
                return int(value)
            if isinstance(value, str):
                return int(Decimal(value.strip()))
        except (InvalidOperation, ValueError, OverflowError):
            logger.warning(f"Failed to parse integer value for {columns[0]}: {value!r}")
            return None

        logger.warning(f"Unexpected type for integer field {columns[0]}: {type(value).__name__} (value: {value!r})")
        return None

    def _extract_float(self, row: Dict[str, Any], columns: Sequence[str]) -> Optional[float]:
        value = _find_value(row, columns)
        if value is _MISSING or value is None:
            return None
        if isinstance(value, bool):
            logger.warning(f"Unexpected type for numeric field {columns[0]}: bool (value: {value})")
            return None
        try:
            if isinstance(value, (int, float, Decimal)):
                return float(value)
            if isinstance(value, str):
                return float(value.strip())
        except (ValueError, OverflowError):
            logger.warning(f"Failed to parse numeric value for {columns[0]}: {value!r}")
            return None

        logger.warning(f"Unexpected type for numeric field {columns[0]}: {type(value).__name__} (value: {value!r})")
        return None

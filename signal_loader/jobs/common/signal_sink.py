# signal_loader/jobs/common/signal_sink.py
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional, Set, Tuple

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError

from signal_loader.jobs.common.transformer import SignalData
from signal_loader.models import SignalRecord

logger = logging.getLogger(__name__)

NaturalKey = Tuple[str, int, Optional[str]]


@dataclass
class IngestResult:
    success: bool
    ingested: int = 0
    error: Optional[str] = None


class SignalSink(ABC):
    """Downstream store the loader appends canonical signals to"""

    @abstractmethod
    def ingest(self, job_code: str, records: List[SignalData],
               execution_record_id: Optional[int] = None) -> IngestResult:
        """Append records; returns per-call success instead of raising"""
        pass

    @abstractmethod
    def count_in_window(self, job_code: str, from_epoch: int, to_epoch: int) -> int:
        """Stored records with from_epoch <= load_timestamp < to_epoch"""
        pass

    @abstractmethod
    def purge_window(self, job_code: str, from_epoch: int, to_epoch: int) -> int:
        pass

    @abstractmethod
    def existing_keys(self, job_code: str, from_epoch: int, to_epoch: int) -> Set[NaturalKey]:
        pass


class DatabaseSignalSink(SignalSink):
    """
    Writes signals into the signal_history table through the loader session.

    Rows are flushed in batches but never committed here: the executor owns
    the transaction so purge, insert and job state land together.
    """

    def __init__(self, session, batch_size: int = 500):
        self.session = session
        self.batch_size = batch_size

    def ingest(self, job_code: str, records: List[SignalData],
               execution_record_id: Optional[int] = None) -> IngestResult:
        if not records:
            return IngestResult(success=True, ingested=0)

        total_batches = (len(records) + self.batch_size - 1) // self.batch_size
        ingested = 0
        try:
            for i in range(0, len(records), self.batch_size):
                batch = records[i:i + self.batch_size]
                current_batch = (i // self.batch_size) + 1
                logger.debug(f"Ingesting batch {current_batch}/{total_batches} for job {job_code}")

                self.session.add_all([
                    SignalRecord(
                        job_code=job_code,
                        load_timestamp=record.load_timestamp,
                        segment_key=record.segment_key,
                        rec_count=record.rec_count,
                        min_val=record.min_val,
                        max_val=record.max_val,
                        avg_val=record.avg_val,
                        sum_val=record.sum_val,
                        execution_record_id=execution_record_id,
                    )
                    for record in batch
                ])
                self.session.flush()
                ingested += len(batch)
        except SQLAlchemyError as e:
            logger.error(f"Error ingesting signals for job {job_code} after {ingested} rows: {e}")
            return IngestResult(success=False, ingested=ingested, error=str(e))

        return IngestResult(success=True, ingested=ingested)

    def count_in_window(self, job_code: str, from_epoch: int, to_epoch: int) -> int:
        return self.session.execute(
            select(func.count(SignalRecord.id)).where(
                SignalRecord.job_code == job_code,
                SignalRecord.load_timestamp >= from_epoch,
                SignalRecord.load_timestamp < to_epoch,
            )
        ).scalar() or 0

    def purge_window(self, job_code: str, from_epoch: int, to_epoch: int) -> int:
        result = self.session.execute(
            delete(SignalRecord)
            .where(
                SignalRecord.job_code == job_code,
                SignalRecord.load_timestamp >= from_epoch,
                SignalRecord.load_timestamp < to_epoch,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    def existing_keys(self, job_code: str, from_epoch: int, to_epoch: int) -> Set[NaturalKey]:
        rows = self.session.execute(
            select(SignalRecord.load_timestamp, SignalRecord.segment_key).where(
                SignalRecord.job_code == job_code,
                SignalRecord.load_timestamp >= from_epoch,
                SignalRecord.load_timestamp < to_epoch,
            )
        )
        return {(job_code, load_timestamp, segment_key) for load_timestamp, segment_key in rows}

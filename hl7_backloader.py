from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional, List, Iterable
import logging

from hl7_parser import HL7Message, HL7MessageError

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = '%Y%m%d%H%M%S'
OUTPUT_EXTENSION = '.ecj'


class BackloadError(HL7MessageError):
    pass


@dataclass
class BackloadRecord:
    account_number: str
    value: str


@dataclass
class BackloadSettings:
    sending_application: str = 'BOOST'
    sending_facility: str = 'BOOST'
    receiving_application: str = 'HIS'
    receiving_facility: str = 'BOOST'
    value_type: str = 'NM'
    observation_id: str = 'ADMPL3'
    result_status: str = 'F'
    wrap_for_mllp: bool = False


def parse_record(line: str) -> BackloadRecord:
    parts = line.strip().split('|')
    if len(parts) < 2 or not parts[0]:
        raise BackloadError(f"Expected 'account|value', got {line.strip()!r}")
    return BackloadRecord(account_number=parts[0], value=parts[1])


def read_records(lines: Iterable[str]) -> List[BackloadRecord]:
    records = []
    for line in lines:
        if not line.strip():
            continue
        records.append(parse_record(line))
    return records


def build_result_message(
    record: BackloadRecord,
    timestamp: Optional[str] = None,
    settings: Optional[BackloadSettings] = None
) -> HL7Message:
    settings = settings or BackloadSettings()
    timestamp = timestamp or datetime.now().strftime(TIMESTAMP_FORMAT)

    message = HL7Message()
    message.append_segment(
        f"MSH|^~\\&|{settings.sending_application}|{settings.sending_facility}"
        f"|{settings.receiving_application}|{settings.receiving_facility}"
        f"|{timestamp}||ORU^R01|{timestamp}|P|2.5"
    )
    message.append_segment('PID|1|||||||||||||||||' + record.account_number + '||')
    message.append_segment('OBR|||||||' + timestamp)
    message.append_segment(
        f"OBX|1|{settings.value_type}|{settings.observation_id}||{record.value}||||||{settings.result_status}"
    )
    return message


def output_filename(record: BackloadRecord, timestamp: str) -> str:
    return f"{timestamp}_{record.account_number}{OUTPUT_EXTENSION}"


def backload_file(
    input_path: str,
    output_dir: str,
    settings: Optional[BackloadSettings] = None
) -> List[Path]:
    settings = settings or BackloadSettings()

    with open(input_path, 'r') as f:
        records = read_records(f)

    logger.info(f"Total line/record count = {len(records)}")

    output_path = Path(output_dir)
    output_path.mkdir(parents=True, exist_ok=True)

    written = []
    for record in records:
        timestamp = datetime.now().strftime(TIMESTAMP_FORMAT)
        message = build_result_message(record, timestamp, settings)

        target = output_path / output_filename(record, timestamp)
        target.write_bytes(message.to_string(settings.wrap_for_mllp).encode('ascii', errors='replace'))
        written.append(target)

        logger.debug(f"Wrote {target}")

    logger.info(f"{len(written)} HL7 files created in {output_dir}")
    return written

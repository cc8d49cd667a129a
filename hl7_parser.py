from dataclasses import dataclass, replace
from typing import Optional, List, Dict, Tuple, Union, Sequence, Iterable
import logging
import re

from hl7_envelope import CARRIAGE_RETURN, END_BLOCK, START_BLOCK, unwrap_message, wrap_message

logger = logging.getLogger(__name__)

HEADER_SEGMENT_ID = 'MSH'
SEGMENT_ID_LENGTH = 3
# MSH + field separator + four encoding characters
MIN_HEADER_LENGTH = 8
FRAMING_CHARACTERS = START_BLOCK + END_BLOCK


class HL7MessageError(Exception):
    pass


class MalformedMessageError(HL7MessageError):
    pass


class SegmentNotFoundError(HL7MessageError, LookupError):
    pass


class InvalidAddressError(HL7MessageError, ValueError):
    pass


@dataclass(frozen=True)
class Delimiters:
    field: str = '|'
    component: str = '^'
    repetition: str = '~'
    escape: str = '\\'
    subcomponent: str = '&'

    def __post_init__(self):
        for name in ('field', 'component', 'repetition', 'escape', 'subcomponent'):
            value = getattr(self, name)
            if not isinstance(value, str) or len(value) != 1:
                raise ValueError(f"{name} delimiter must be a single character, got {value!r}")

    @classmethod
    def from_header(cls, header: str) -> 'Delimiters':
        if header[:SEGMENT_ID_LENGTH] != HEADER_SEGMENT_ID:
            raise MalformedMessageError(f"Expected {HEADER_SEGMENT_ID} header, got {header[:SEGMENT_ID_LENGTH]!r}")
        if len(header) < MIN_HEADER_LENGTH:
            raise MalformedMessageError(
                f"Header segment too short to declare delimiters ({len(header)} < {MIN_HEADER_LENGTH} characters)"
            )
        return cls(
            field=header[3],
            component=header[4],
            repetition=header[5],
            escape=header[6],
            subcomponent=header[7],
        )

    @property
    def encoding_characters(self) -> str:
        return self.component + self.repetition + self.escape + self.subcomponent

    def for_depth(self, depth: int) -> str:
        # depth 1 is fields, 2 repetitions, 3 components, 4 subcomponents
        return (self.field, self.repetition, self.component, self.subcomponent)[depth - 1]


def split(value: str, delimiter: str) -> List[str]:
    return value.split(delimiter)


def join(items: Iterable[str], delimiter: str) -> str:
    # zero items join to ''
    return delimiter.join(items)


_ADDRESS_PATTERN = re.compile(
    r'^(?P<segment>[A-Z0-9]{3})(?:\[(?P<occurrence>\d+)\])?(?:-(?P<indices>\d+(?:\.\d+){0,3}))?$'
)


@dataclass(frozen=True)
class HL7Address:
    segment_id: str
    occurrence: int = 0
    field: Optional[int] = None
    repetition: Optional[int] = None
    component: Optional[int] = None
    subcomponent: Optional[int] = None

    def __post_init__(self):
        gap = False
        for index in (self.field, self.repetition, self.component, self.subcomponent):
            if index is None:
                gap = True
            elif gap:
                raise InvalidAddressError(f"Address levels must be filled left to right: {self!r}")

    @classmethod
    def from_indices(cls, segment_id: str, occurrence: int, *indices: int) -> 'HL7Address':
        if len(indices) > 4:
            raise InvalidAddressError(f"At most 4 indices below the segment, got {len(indices)}")
        padded = list(indices) + [None] * (4 - len(indices))
        return cls(segment_id, occurrence, *padded)

    @classmethod
    def parse(cls, text: str) -> 'HL7Address':
        """Parse ``SEG[occurrence]-field.repetition.component.subcomponent``.

        The occurrence and every level after the segment are optional,
        e.g. ``PID``, ``PID-3``, ``IN1[2]-3.0.1``.
        """
        match = _ADDRESS_PATTERN.match(text.strip())
        if not match:
            raise InvalidAddressError(f"Invalid address: {text!r}")

        occurrence = int(match.group('occurrence') or 0)
        indices = match.group('indices')
        numbers = [int(part) for part in indices.split('.')] if indices else []
        return cls.from_indices(match.group('segment'), occurrence, *numbers)

    @property
    def indices(self) -> Tuple[int, ...]:
        levels = (self.field, self.repetition, self.component, self.subcomponent)
        return tuple(index for index in levels if index is not None)

    @property
    def depth(self) -> int:
        return len(self.indices)

    def parent(self) -> 'HL7Address':
        if self.depth == 0:
            raise InvalidAddressError(f"Segment address {self} has no parent")
        return HL7Address.from_indices(self.segment_id, self.occurrence, *self.indices[:-1])

    def __str__(self) -> str:
        text = f"{self.segment_id}[{self.occurrence}]"
        if self.indices:
            text += '-' + '.'.join(str(index) for index in self.indices)
        return text


SegmentInput = Union[str, Sequence[str]]


class HL7Message:
    def __init__(self, raw_message: Optional[str] = None, delimiters: Optional[Delimiters] = None):
        self._delimiters = delimiters or Delimiters()
        self._segments: List[str] = []
        self._segment_indices: Dict[str, List[int]] = {}
        self._split_segments: Dict[int, Tuple[str, ...]] = {}

        if raw_message is not None:
            self.load(raw_message)

    def load(self, raw_message: str) -> 'HL7Message':
        message = unwrap_message(raw_message)
        if message[:SEGMENT_ID_LENGTH] != HEADER_SEGMENT_ID:
            raise MalformedMessageError(f"Message missing {HEADER_SEGMENT_ID} as first segment")

        segments = message.split(CARRIAGE_RETURN)
        delimiters = Delimiters.from_header(segments[0])

        # a terminating CR leaves one empty segment behind
        if segments[-1] == '':
            segments.pop()

        indices = self._index_segments(segments)

        self._delimiters = delimiters
        self._segments = segments
        self._segment_indices = indices
        self._split_segments = {}

        logger.debug(f"Loaded message with {len(segments)} segments")
        return self

    @property
    def delimiters(self) -> Delimiters:
        return self._delimiters

    @delimiters.setter
    def delimiters(self, delimiters: Delimiters):
        # segment text is not rewritten; cached splits would be stale
        self._delimiters = delimiters
        self._split_segments.clear()

    def _replace_delimiter(self, **changes: str):
        self.delimiters = replace(self._delimiters, **changes)

    @property
    def field_delimiter(self) -> str:
        return self._delimiters.field

    @field_delimiter.setter
    def field_delimiter(self, value: str):
        self._replace_delimiter(field=value)

    @property
    def repetition_delimiter(self) -> str:
        return self._delimiters.repetition

    @repetition_delimiter.setter
    def repetition_delimiter(self, value: str):
        self._replace_delimiter(repetition=value)

    @property
    def component_delimiter(self) -> str:
        return self._delimiters.component

    @component_delimiter.setter
    def component_delimiter(self, value: str):
        self._replace_delimiter(component=value)

    @property
    def subcomponent_delimiter(self) -> str:
        return self._delimiters.subcomponent

    @subcomponent_delimiter.setter
    def subcomponent_delimiter(self, value: str):
        self._replace_delimiter(subcomponent=value)

    @property
    def escape_character(self) -> str:
        return self._delimiters.escape

    @escape_character.setter
    def escape_character(self, value: str):
        self._replace_delimiter(escape=value)

    @property
    def segment_count(self) -> int:
        return len(self._segments)

    def __len__(self) -> int:
        return len(self._segments)

    def has_segment(self, segment_id: str) -> bool:
        return segment_id in self._segment_indices

    def first_index_of_segment(self, segment_id: str) -> int:
        positions = self._segment_indices.get(segment_id)
        return positions[0] if positions else -1

    def get_segment(self, segment_id: str, occurrence: int = 0) -> str:
        position = self._position(segment_id, occurrence)
        if position is None:
            return ''
        return self._segments[position]

    def get_segments(self, segment_id: str) -> List[str]:
        return [self._segments[position] for position in self._segment_indices.get(segment_id, [])]

    def get_all_segments(self) -> List[str]:
        return list(self._segments)

    def get_all_fields(self, segment_id: str, occurrence: int = 0) -> List[str]:
        position = self._position(segment_id, occurrence)
        if position is None:
            return []
        return list(self._fields_at(position))

    def insert_segment(self, position: int, segment: SegmentInput):
        segments = list(self._segments)
        segments.insert(position, self._segment_text(segment))
        self._replace_segments(segments)

    def append_segment(self, segment: SegmentInput):
        self._replace_segments(self._segments + [self._segment_text(segment)])

    def remove_segment_at(self, position: int):
        if not 0 <= position < len(self._segments):
            raise IndexError(f"Segment position {position} out of range (0-{len(self._segments) - 1})")
        segments = list(self._segments)
        del segments[position]
        self._replace_segments(segments)

    def remove_all_segments(self, segment_id: str) -> int:
        segments = [segment for segment in self._segments if segment[:SEGMENT_ID_LENGTH] != segment_id]
        removed = len(self._segments) - len(segments)
        if removed:
            self._replace_segments(segments)
        return removed

    # a missing segment, occurrence or index at any level reads as '', never an error
    def get(self, address: HL7Address) -> str:
        position = self._position(address.segment_id, address.occurrence)
        if position is None:
            return ''
        if address.field is None:
            return self._segments[position]

        value = _element(self._fields_at(position), address.field)
        for depth, index in enumerate(address.indices[1:], start=2):
            if not value:
                return ''
            value = _element(split(value, self._delimiters.for_depth(depth)), index)
        return value

    def set(self, address: HL7Address, value: str):
        position = self._position(address.segment_id, address.occurrence)
        if position is None:
            raise SegmentNotFoundError(
                f"No occurrence {address.occurrence} of segment {address.segment_id} to write to"
            )
        for index in address.indices:
            if index < 0:
                raise InvalidAddressError(f"Negative index in {address}")

        segment = self._rewrite(address, value, position)
        self._store_segment(position, segment)

    def get_value(self, segment_id: str, occurrence: int, field_index: int, *indices: int) -> str:
        return self.get(HL7Address.from_indices(segment_id, occurrence, field_index, *indices))

    def set_value(self, segment_id: str, occurrence: int, field_index: int, *indices_and_value):
        """``set_value('PID', 0, 3, 0, 0, 'X')``: the last argument is the value."""
        if not indices_and_value:
            raise TypeError("set_value() missing the value to write")
        *indices, value = indices_and_value
        self.set(HL7Address.from_indices(segment_id, occurrence, field_index, *indices), value)

    def get_field(self, segment_id: str, field_index: int, occurrence: int = 0) -> str:
        return self.get_value(segment_id, occurrence, field_index)

    def get_repetitions(self, field_value: str) -> List[str]:
        return split(field_value, self._delimiters.repetition)

    def get_components(self, repetition_value: str) -> List[str]:
        return split(repetition_value, self._delimiters.component)

    def get_subcomponents(self, component_value: str) -> List[str]:
        return split(component_value, self._delimiters.subcomponent)

    @property
    def message_type(self) -> str:
        return self.get_value(HEADER_SEGMENT_ID, 0, 8)

    @property
    def message_control_id(self) -> str:
        return self.get_value(HEADER_SEGMENT_ID, 0, 9)

    def to_string(self, wrap_for_mllp: bool = False) -> str:
        message = ''.join(segment + CARRIAGE_RETURN for segment in self._segments)
        if wrap_for_mllp:
            return wrap_message(message)
        return message

    def __str__(self) -> str:
        return self.to_string()

    def __repr__(self) -> str:
        return f"HL7Message(segments={len(self._segments)}, type={self.message_type!r})"

    def _position(self, segment_id: str, occurrence: int) -> Optional[int]:
        positions = self._segment_indices.get(segment_id)
        if positions and 0 <= occurrence < len(positions):
            return positions[occurrence]
        return None

    def _fields_at(self, position: int) -> Tuple[str, ...]:
        fields = self._split_segments.get(position)
        if fields is None:
            fields = tuple(split(self._segments[position], self._delimiters.field))
            self._split_segments[position] = fields
        return fields

    def _rewrite(self, address: HL7Address, value: str, position: int) -> str:
        if address.depth == 0:
            return value

        parent = address.parent()
        if address.depth == 1:
            items = list(self._fields_at(position))
        else:
            items = split(self.get(parent), self._delimiters.for_depth(address.depth))

        items = _with_element(items, address.indices[-1], value)
        return self._rewrite(parent, join(items, self._delimiters.for_depth(address.depth)), position)

    def _store_segment(self, position: int, segment: str):
        _check_segment(segment)
        if segment[:SEGMENT_ID_LENGTH] != self._segments[position][:SEGMENT_ID_LENGTH]:
            segments = list(self._segments)
            segments[position] = segment
            self._replace_segments(segments)
            return

        self._segments[position] = segment
        self._split_segments.pop(position, None)

    def _segment_text(self, segment: SegmentInput) -> str:
        if isinstance(segment, str):
            return segment
        return join(segment, self._delimiters.field)

    def _replace_segments(self, segments: List[str]):
        indices = self._index_segments(segments)
        self._segments = segments
        self._segment_indices = indices
        # positions may have shifted
        self._split_segments.clear()

    @staticmethod
    def _index_segments(segments: List[str]) -> Dict[str, List[int]]:
        indices: Dict[str, List[int]] = {}
        for position, segment in enumerate(segments):
            if not segment:
                continue
            _check_segment(segment)
            indices.setdefault(segment[:SEGMENT_ID_LENGTH], []).append(position)
        return indices


def _check_segment(segment: str):
    if CARRIAGE_RETURN in segment:
        raise MalformedMessageError(f"Segment {segment[:SEGMENT_ID_LENGTH]!r} contains a segment terminator")
    if segment and len(segment) < SEGMENT_ID_LENGTH:
        raise MalformedMessageError(f"Segment {segment!r} is shorter than a segment identifier")


def _element(items: Sequence[str], index: int) -> str:
    if 0 <= index < len(items):
        return items[index]
    return ''


def _with_element(items: Sequence[str], index: int, value: str) -> List[str]:
    updated = list(items)
    if index >= len(updated):
        updated.extend([''] * (index + 1 - len(updated)))
    updated[index] = value
    return updated


def load_message(raw_message: str) -> HL7Message:
    return HL7Message(raw_message)


def split_messages(content: str) -> List[str]:
    messages = []
    current_message = []

    for line in re.split(r'\r\n|\n|\r', content):
        # only framing bytes are removed; spaces and tabs belong to field content
        line = line.strip(FRAMING_CHARACTERS)
        if not line.strip():
            continue

        if line.startswith(HEADER_SEGMENT_ID):
            if current_message:
                messages.append(CARRIAGE_RETURN.join(current_message))
            current_message = [line]
        elif current_message:
            current_message.append(line)
        else:
            logger.debug(f"Skipping text before first {HEADER_SEGMENT_ID} segment: {line[:40]!r}")

    if current_message:
        messages.append(CARRIAGE_RETURN.join(current_message))

    return messages


class HL7Parser:
    def parse_file(self, content: str) -> List[HL7Message]:
        messages = []

        for raw_message in split_messages(content):
            try:
                messages.append(self.parse_message(raw_message))
            except HL7MessageError as e:
                logger.warning(f"Failed to parse message: {e}")
                continue

        return messages

    def parse_message(self, raw_message: str) -> HL7Message:
        return HL7Message(raw_message)

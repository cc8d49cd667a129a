from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any
import json
import re
import xml.etree.ElementTree as ET

from hl7_parser import HL7Message, HEADER_SEGMENT_ID, MalformedMessageError, split

ROOT_NAME = 'HL7Message'

# characters XML 1.0 cannot carry
_CONTROL_CHARACTERS = re.compile(r'[\x00-\x08\x0b\x0c\x0e-\x1f]')
_XML_NAME = re.compile(r"[^\W\d][\w.\-]*\Z")


@dataclass
class TreeNode:
    name: str
    text: Optional[str] = None
    children: List['TreeNode'] = field(default_factory=list)

    def add_child(self, name: str, text: Optional[str] = None) -> 'TreeNode':
        child = TreeNode(name=name, text=text)
        self.children.append(child)
        return child

    def find(self, name: str) -> Optional['TreeNode']:
        for child in self.children:
            if child.name == name:
                return child
            found = child.find(name)
            if found is not None:
                return found
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'text': self.text,
            'children': [child.to_dict() for child in self.children],
        }

    def to_element(self) -> ET.Element:
        if not _XML_NAME.match(self.name):
            raise MalformedMessageError(f"{self.name!r} is not a valid XML element name")
        element = ET.Element(self.name)
        if self.text:
            element.text = self.text
        for child in self.children:
            element.append(child.to_element())
        return element

    def to_xml(self, pretty: bool = False) -> str:
        element = self.to_element()
        if pretty:
            ET.indent(element)
        return ET.tostring(element, encoding='unicode')

    def to_json(self, indent: Optional[int] = None) -> str:
        return json.dumps(self.to_dict(), indent=indent)


class HL7TreeProjector:
    def __init__(self, message: HL7Message):
        self.message = message

    def project(self) -> TreeNode:
        root = TreeNode(name=ROOT_NAME)
        delimiters = self.message.delimiters
        levels = [delimiters.repetition, delimiters.component, delimiters.subcomponent]

        for segment in self.message.get_all_segments():
            if not segment:
                continue

            fields = split(segment, delimiters.field)
            segment_id = fields[0]
            segment_node = root.add_child(segment_id)

            for index, value in enumerate(fields):
                field_node = segment_node.add_child(f"{segment_id}.{index}")
                if segment_id == HEADER_SEGMENT_ID and index == 1:
                    field_node.text = _clean(value)
                    continue
                self._project_value(field_node, value, levels)

        return root

    def _project_value(self, node: TreeNode, value: str, levels: List[str]):
        if not levels:
            node.text = _clean(value)
            return

        parts = split(value, levels[0])
        if len(parts) == 1:
            self._project_value(node, value, levels[1:])
            return

        for index, part in enumerate(parts):
            child = node.add_child(f"{node.name}.{index}")
            self._project_value(child, part, levels[1:])


def _clean(text: str) -> str:
    return _CONTROL_CHARACTERS.sub('', text)


def message_to_tree(message: HL7Message) -> TreeNode:
    return HL7TreeProjector(message).project()


def message_to_xml(message: HL7Message, pretty: bool = False) -> str:
    return message_to_tree(message).to_xml(pretty=pretty)


def message_to_json(message: HL7Message, indent: Optional[int] = None) -> str:
    return message_to_tree(message).to_json(indent=indent)

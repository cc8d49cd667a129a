import json
import unittest
import xml.etree.ElementTree as ET

from hl7_parser import HL7Message, MalformedMessageError
from hl7_tree import HL7TreeProjector, TreeNode, ROOT_NAME, message_to_tree, message_to_xml, message_to_json

MESSAGE = (
    "MSH|^~\\&|A|B\r"
    "PID|1||P1~P2||Doe^John||X&Y\r"
    "ZZZ|a^b&c~d"
)


class TestHL7TreeProjector(unittest.TestCase):

    def setUp(self):
        self.tree = HL7TreeProjector(HL7Message(MESSAGE)).project()

    def test_root_and_segments(self):
        self.assertEqual(self.tree.name, ROOT_NAME)
        self.assertEqual([child.name for child in self.tree.children], ["MSH", "PID", "ZZZ"])

    def test_every_field_becomes_a_node(self):
        pid = self.tree.children[1]
        self.assertEqual([child.name for child in pid.children], [f"PID.{i}" for i in range(8)])
        self.assertEqual(pid.children[0].text, "PID")
        self.assertEqual(pid.children[2].text, "")

    def test_encoding_characters_verbatim(self):
        encoding = self.tree.find("MSH.1")
        self.assertEqual(encoding.text, "^~\\&")
        self.assertEqual(encoding.children, [])

    def test_single_element_is_text(self):
        self.assertEqual(self.tree.find("MSH.2").text, "A")
        self.assertEqual(self.tree.find("PID.1").children, [])

    def test_repetitions(self):
        field = self.tree.find("PID.3")
        self.assertIsNone(field.text)
        self.assertEqual([(c.name, c.text) for c in field.children], [("PID.3.0", "P1"), ("PID.3.1", "P2")])

    def test_components(self):
        self.assertEqual(self.tree.find("PID.5.0").text, "Doe")
        self.assertEqual(self.tree.find("PID.5.1").text, "John")

    def test_subcomponents(self):
        self.assertEqual(self.tree.find("PID.7.0").text, "X")
        self.assertEqual(self.tree.find("PID.7.1").text, "Y")

    def test_repetition_splits_before_component(self):
        field = self.tree.find("ZZZ.1")
        self.assertEqual([child.name for child in field.children], ["ZZZ.1.0", "ZZZ.1.1"])
        self.assertEqual(self.tree.find("ZZZ.1.1").text, "d")
        self.assertEqual(self.tree.find("ZZZ.1.0.0").text, "a")
        self.assertEqual(self.tree.find("ZZZ.1.0.1.0").text, "b")
        self.assertEqual(self.tree.find("ZZZ.1.0.1.1").text, "c")

    def test_non_standard_delimiters(self):
        tree = message_to_tree(HL7Message("MSH#*@!%#A\rPID#x*y"))
        self.assertEqual(tree.find("MSH.1").text, "*@!%")
        self.assertEqual(tree.find("PID.1.0").text, "x")
        self.assertEqual(tree.find("PID.1.1").text, "y")

    def test_control_characters_stripped(self):
        tree = message_to_tree(HL7Message("MSH|^~\\&|A\x07B"))
        self.assertEqual(tree.find("MSH.2").text, "AB")

    def test_empty_segments_skipped(self):
        tree = message_to_tree(HL7Message(MESSAGE + "\r\r"))
        self.assertEqual(len(tree.children), 3)


class TestTreeExport(unittest.TestCase):

    def test_to_xml(self):
        root = ET.fromstring(message_to_xml(HL7Message(MESSAGE)))
        self.assertEqual(root.tag, ROOT_NAME)
        self.assertEqual(next(root.iter("PID.5.1")).text, "John")
        self.assertEqual(next(root.iter("MSH.1")).text, "^~\\&")

    def test_to_xml_pretty(self):
        xml_output = message_to_xml(HL7Message(MESSAGE), pretty=True)
        self.assertIn("\n  <MSH>", xml_output)
        self.assertEqual(ET.fromstring(xml_output).tag, ROOT_NAME)

    def test_to_xml_rejects_invalid_segment_name(self):
        message = HL7Message("MSH|^~\\&|A\r1AB|x")
        with self.assertRaises(MalformedMessageError):
            message_to_xml(message)
        document = json.loads(message_to_json(message))
        self.assertEqual(document["children"][1]["name"], "1AB")

    def test_to_xml_accepts_z_segments(self):
        root = ET.fromstring(message_to_xml(HL7Message("MSH|^~\\&|A\rZ01|x")))
        self.assertEqual(next(root.iter("Z01.1")).text, "x")

    def test_to_json(self):
        document = json.loads(message_to_json(HL7Message(MESSAGE)))
        self.assertEqual(document["name"], ROOT_NAME)
        self.assertEqual(document["children"][0]["name"], "MSH")
        self.assertEqual(document["children"][0]["children"][2], {"name": "MSH.2", "text": "A", "children": []})

    def test_tree_node_helpers(self):
        node = TreeNode("root")
        child = node.add_child("a", "1")
        child.add_child("b", "2")
        self.assertEqual(node.find("b").text, "2")
        self.assertIsNone(node.find("missing"))
        self.assertEqual(node.to_dict()["children"][0]["text"], "1")


if __name__ == '__main__':
    unittest.main()

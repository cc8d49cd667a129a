import unittest
from hl7_envelope import wrap_message, unwrap_message, is_wrapped, START_BLOCK, END_BLOCK
from hl7_parser import (
    HL7Parser, HL7Message, HL7Address, Delimiters, join, load_message, split_messages,
    HL7MessageError, MalformedMessageError, SegmentNotFoundError, InvalidAddressError
)

MSH = "MSH|^~\\&|A|B|C|D|20240101||ORU^R01|1|P|2.5"
PID = "PID|1|||||||||||||||||ACCT1||"
SAMPLE = MSH + "\r" + PID


class TestDelimiters(unittest.TestCase):

    def test_from_header_standard(self):
        delimiters = Delimiters.from_header(MSH)
        self.assertEqual(delimiters.field, "|")
        self.assertEqual(delimiters.component, "^")
        self.assertEqual(delimiters.repetition, "~")
        self.assertEqual(delimiters.escape, "\\")
        self.assertEqual(delimiters.subcomponent, "&")
        self.assertEqual(delimiters.encoding_characters, "^~\\&")

    def test_from_header_non_standard(self):
        delimiters = Delimiters.from_header("MSH#*@!%#APP")
        self.assertEqual(delimiters.field, "#")
        self.assertEqual(delimiters.component, "*")
        self.assertEqual(delimiters.repetition, "@")
        self.assertEqual(delimiters.escape, "!")
        self.assertEqual(delimiters.subcomponent, "%")

    def test_short_header(self):
        with self.assertRaises(MalformedMessageError):
            Delimiters.from_header("MSH|^~")

    def test_delimiter_must_be_single_character(self):
        with self.assertRaises(ValueError):
            Delimiters(field="||")

    def test_join_zero_items(self):
        self.assertEqual(join([], "|"), "")


class TestEnvelope(unittest.TestCase):

    def test_wrap_plain(self):
        self.assertEqual(wrap_message("MSH|x"), "\x0bMSH|x\x1c\r")

    def test_wrap_idempotent(self):
        self.assertEqual(wrap_message(wrap_message(MSH)), wrap_message(MSH))

    def test_wrap_completes_bare_end_block(self):
        self.assertEqual(wrap_message("\x0bMSH|x\x1c"), "\x0bMSH|x\x1c\r")

    def test_unwrap(self):
        self.assertEqual(unwrap_message("\x0bMSH|x\x1c\r"), "MSH|x")
        self.assertEqual(unwrap_message("\x0bMSH|x\x1c"), "MSH|x")
        self.assertEqual(unwrap_message("MSH|x"), "MSH|x")

    def test_unwrap_unwrap_wrap_wrap(self):
        for text in ["", "A", "MSH|x\r", SAMPLE, SAMPLE + "\r"]:
            self.assertEqual(unwrap_message(unwrap_message(wrap_message(wrap_message(text)))), text)

    def test_short_input(self):
        self.assertEqual(unwrap_message(""), "")
        self.assertEqual(unwrap_message(START_BLOCK), "")
        self.assertEqual(unwrap_message(END_BLOCK), "")
        self.assertEqual(wrap_message(""), "\x0b\x1c\r")

    def test_is_wrapped(self):
        self.assertTrue(is_wrapped(wrap_message(MSH)))
        self.assertFalse(is_wrapped(MSH))


class TestLoad(unittest.TestCase):

    def test_load_sample(self):
        message = load_message(SAMPLE)
        self.assertEqual(message.segment_count, 2)
        self.assertEqual(message.get_segment("MSH"), MSH)
        self.assertEqual(message.get_segment("PID"), PID)
        self.assertEqual(message.message_type, "ORU^R01")
        self.assertEqual(message.message_control_id, "1")

    def test_missing_header(self):
        with self.assertRaises(MalformedMessageError):
            HL7Message("PID|1\r" + MSH)

    def test_empty_text(self):
        with self.assertRaises(MalformedMessageError):
            HL7Message("")

    def test_header_too_short(self):
        with self.assertRaises(MalformedMessageError):
            HL7Message("MSH|^~\rPID|1")

    def test_segment_shorter_than_identifier(self):
        with self.assertRaises(MalformedMessageError):
            HL7Message(MSH + "\rPI")

    def test_errors_share_base_class(self):
        with self.assertRaises(HL7MessageError):
            HL7Message("garbage")

    def test_failed_load_keeps_previous_state(self):
        message = HL7Message(SAMPLE)
        with self.assertRaises(MalformedMessageError):
            message.load("XYZ|1")
        self.assertEqual(message.segment_count, 2)
        self.assertEqual(message.get_field("PID", 18), "ACCT1")

    def test_load_framed(self):
        message = HL7Message(wrap_message(SAMPLE))
        self.assertEqual(message.segment_count, 2)
        self.assertEqual(message.get_segment("PID"), PID)

    def test_single_trailing_empty_segment_dropped(self):
        self.assertEqual(HL7Message(SAMPLE + "\r").segment_count, 2)

    def test_additional_trailing_empty_segments_preserved(self):
        message = HL7Message(SAMPLE + "\r\r")
        self.assertEqual(message.segment_count, 3)
        self.assertEqual(message.get_all_segments()[-1], "")
        self.assertEqual(message.to_string(), SAMPLE + "\r\r")

    def test_load_replaces_previous_content(self):
        message = HL7Message(SAMPLE)
        message.load(MSH + "\rOBX|1|NM")
        self.assertFalse(message.has_segment("PID"))
        self.assertEqual(message.get_field("OBX", 2), "NM")

    def test_non_standard_delimiters(self):
        message = HL7Message("MSH#*@!%#APP\rPID#1#X*Y@Z%W")
        self.assertEqual(message.get_value("PID", 0, 2), "X*Y@Z%W")
        self.assertEqual(message.get_value("PID", 0, 2, 0, 1), "Y")
        self.assertEqual(message.get_value("PID", 0, 2, 1), "Z%W")
        self.assertEqual(message.get_value("PID", 0, 2, 1, 0, 1), "W")


class TestRender(unittest.TestCase):

    def test_round_trip(self):
        text = SAMPLE + "\r"
        self.assertEqual(HL7Message(text).to_string(), text)

    def test_render_terminates_every_segment(self):
        self.assertEqual(HL7Message(SAMPLE).to_string(False), MSH + "\r" + PID + "\r")

    def test_render_wrapped(self):
        rendered = HL7Message(SAMPLE).to_string(wrap_for_mllp=True)
        self.assertEqual(rendered, "\x0b" + SAMPLE + "\r\x1c\r")

    def test_str(self):
        self.assertEqual(str(HL7Message(SAMPLE)), SAMPLE + "\r")

    def test_empty_message(self):
        message = HL7Message()
        self.assertEqual(message.segment_count, 0)
        self.assertEqual(message.to_string(), "")


class TestAddress(unittest.TestCase):

    def test_parse_full(self):
        address = HL7Address.parse("IN1[2]-3.0.1.4")
        self.assertEqual(address, HL7Address("IN1", 2, 3, 0, 1, 4))
        self.assertEqual(address.depth, 4)

    def test_parse_defaults(self):
        self.assertEqual(HL7Address.parse("PID-5"), HL7Address("PID", 0, 5))
        self.assertEqual(HL7Address.parse("PID").depth, 0)

    def test_str(self):
        self.assertEqual(str(HL7Address("PID", 1, 5, 0, 2)), "PID[1]-5.0.2")
        self.assertEqual(HL7Address.parse(str(HL7Address("PID", 1, 5, 0, 2))), HL7Address("PID", 1, 5, 0, 2))

    def test_parse_invalid(self):
        with self.assertRaises(InvalidAddressError):
            HL7Address.parse("PID-a")
        with self.assertRaises(InvalidAddressError):
            HL7Address.parse("PID-1.2.3.4.5")

    def test_gapped_address(self):
        with self.assertRaises(InvalidAddressError):
            HL7Address("PID", 0, 3, None, 1)

    def test_parent(self):
        self.assertEqual(HL7Address("PID", 0, 3, 0, 1).parent(), HL7Address("PID", 0, 3, 0))
        with self.assertRaises(InvalidAddressError):
            HL7Address("PID").parent()


class TestGetValue(unittest.TestCase):

    def setUp(self):
        self.message = HL7Message(
            MSH + "\r"
            "PID|1||P123~P456||Doe^John^Q||19850210|M\r"
            "DG1|1||A1&A2&A3^Desc\r"
            "IN1|1||PLAN1\r"
            "IN1|2||PLAN2\r"
            "IN1|3||PLAN3"
        )

    def test_field(self):
        self.assertEqual(self.message.get_value("PID", 0, 7), "19850210")
        self.assertEqual(self.message.get_field("PID", 0), "PID")

    def test_repetition(self):
        self.assertEqual(self.message.get_value("PID", 0, 3, 0), "P123")
        self.assertEqual(self.message.get_value("PID", 0, 3, 1), "P456")

    def test_component(self):
        self.assertEqual(self.message.get_value("PID", 0, 5, 0, 1), "John")

    def test_subcomponent(self):
        self.assertEqual(self.message.get_value("DG1", 0, 3, 0, 0, 2), "A3")
        self.assertEqual(self.message.get_value("DG1", 0, 3, 0, 1, 0), "Desc")

    def test_occurrence(self):
        self.assertEqual(self.message.get_value("IN1", 2, 3), "PLAN3")
        self.assertEqual(self.message.get_field("IN1", 3, occurrence=1), "PLAN2")

    def test_missing_is_empty(self):
        self.assertEqual(self.message.get_value("PID", 0, 40), "")
        self.assertEqual(self.message.get_value("PID", 0, 3, 5), "")
        self.assertEqual(self.message.get_value("PID", 0, 5, 0, 9), "")
        self.assertEqual(self.message.get_value("PID", 0, 5, 0, 0, 3), "")
        self.assertEqual(self.message.get_value("ZZZ", 0, 1), "")
        self.assertEqual(self.message.get_value("IN1", 3, 1), "")
        self.assertEqual(self.message.get_value("PID", -1, 1), "")
        self.assertEqual(self.message.get_value("PID", 0, -1), "")

    def test_get_by_address(self):
        self.assertEqual(self.message.get(HL7Address.parse("PID-5.0.0")), "Doe")
        self.assertEqual(self.message.get(HL7Address("IN1", 1)), "IN1|2||PLAN2")

    def test_segment_lookup(self):
        self.assertEqual(self.message.get_segments("IN1"), ["IN1|1||PLAN1", "IN1|2||PLAN2", "IN1|3||PLAN3"])
        self.assertEqual(self.message.get_segment("IN1", 1), "IN1|2||PLAN2")
        self.assertEqual(self.message.get_segment("IN1", 7), "")
        self.assertEqual(self.message.get_segments("ZZZ"), [])
        self.assertEqual(self.message.first_index_of_segment("IN1"), 3)
        self.assertEqual(self.message.first_index_of_segment("ZZZ"), -1)

    def test_get_all_fields(self):
        fields = self.message.get_all_fields("IN1", 2)
        self.assertEqual(fields, ["IN1", "3", "", "PLAN3"])
        self.assertEqual(self.message.get_all_fields("ZZZ"), [])

    def test_get_all_fields_returns_copy(self):
        fields = self.message.get_all_fields("IN1", 0)
        fields[3] = "CHANGED"
        self.assertEqual(self.message.get_value("IN1", 0, 3), "PLAN1")

    def test_split_helpers(self):
        self.assertEqual(self.message.get_repetitions("a~b"), ["a", "b"])
        self.assertEqual(self.message.get_components("a^b^c"), ["a", "b", "c"])
        self.assertEqual(self.message.get_subcomponents("a&b"), ["a", "b"])


class TestSetValue(unittest.TestCase):

    def setUp(self):
        self.message = HL7Message(SAMPLE)

    def test_set_component_of_empty_field(self):
        self.message.set_value("PID", 0, 3, 0, 0, "X")
        self.assertEqual(self.message.get_value("PID", 0, 3), "X")
        self.assertEqual(self.message.to_string(False), MSH + "\rPID|1||X|||||||||||||||ACCT1||\r")

    def test_set_field(self):
        self.message.set_value("PID", 0, 18, "ACCT2")
        self.assertEqual(self.message.get_value("PID", 0, 18), "ACCT2")
        self.assertEqual(len(self.message.get_all_fields("PID")), 21)

    def test_set_field_extends(self):
        self.message.set_value("PID", 0, 25, "Z")
        fields = self.message.get_all_fields("PID")
        self.assertEqual(len(fields), 26)
        self.assertEqual(fields[25], "Z")
        for index in range(21, 25):
            self.assertEqual(self.message.get_value("PID", 0, index), "")

    def test_set_then_get_every_level(self):
        cases = [
            ("PID", 0, 30, "F"),
            ("PID", 0, 31, 3, "R"),
            ("PID", 0, 32, 2, 4, "C"),
            ("PID", 0, 33, 1, 2, 5, "S"),
        ]
        for case in cases:
            *address, value = case
            self.message.set_value(*case)
            self.assertEqual(self.message.get_value(*address), value)

    def test_lower_indices_empty_after_extension(self):
        self.message.set_value("PID", 0, 5, 2, 3, 4, "S")
        for repetition in range(2):
            self.assertEqual(self.message.get_value("PID", 0, 5, repetition), "")
        for component in range(3):
            self.assertEqual(self.message.get_value("PID", 0, 5, 2, component), "")
        for subcomponent in range(4):
            self.assertEqual(self.message.get_value("PID", 0, 5, 2, 3, subcomponent), "")
        self.assertEqual(self.message.get_value("PID", 0, 5), "~~^^^&&&&S")

    def test_set_subcomponent_rewrites_segment(self):
        self.message.append_segment("DG1|1||A1^Desc")
        self.message.set_value("DG1", 0, 3, 0, 0, 1, "A2")
        self.message.set_value("DG1", 0, 3, 0, 0, 2, "A3")
        self.assertEqual(self.message.get_segment("DG1"), "DG1|1||A1&A2&A3^Desc")

    def test_set_repetition(self):
        self.message.append_segment("IN1|1||")
        self.message.set_value("IN1", 0, 3, 0, "repval1")
        self.message.set_value("IN1", 0, 3, 1, "repval2")
        self.assertEqual(self.message.get_value("IN1", 0, 3), "repval1~repval2")

    def test_set_by_address(self):
        self.message.set(HL7Address.parse("PID-5.0.1"), "JOHN")
        self.assertEqual(self.message.get_value("PID", 0, 5), "^JOHN")

    def test_replace_whole_segment(self):
        self.message.set(HL7Address("PID"), "PID|2")
        self.assertEqual(self.message.get_field("PID", 1), "2")

    def test_cache_reflects_write(self):
        self.assertEqual(self.message.get_value("PID", 0, 1), "1")
        self.message.set_value("PID", 0, 1, "9")
        self.assertEqual(self.message.get_value("PID", 0, 1), "9")
        self.assertEqual(self.message.get_all_fields("PID")[1], "9")

    def test_set_missing_segment(self):
        with self.assertRaises(SegmentNotFoundError):
            self.message.set_value("ZZZ", 0, 1, "x")
        with self.assertRaises(SegmentNotFoundError):
            self.message.set_value("PID", 1, 1, "x")

    def test_set_negative_index(self):
        before = self.message.to_string()
        with self.assertRaises(InvalidAddressError):
            self.message.set_value("PID", 0, 3, -1, "x")
        self.assertEqual(self.message.to_string(), before)

    def test_failed_write_leaves_message_unchanged(self):
        before = self.message.to_string()
        with self.assertRaises(MalformedMessageError):
            self.message.set(HL7Address("PID"), "PI")
        self.assertEqual(self.message.to_string(), before)
        self.assertEqual(self.message.get_value("PID", 0, 18), "ACCT1")

    def test_value_with_segment_terminator_rejected(self):
        before = self.message.to_string()
        with self.assertRaises(MalformedMessageError):
            self.message.set_value("PID", 0, 3, 0, 1, "a\rb")
        self.assertEqual(self.message.to_string(), before)
        self.assertEqual(HL7Message(before).to_string(), before)

    def test_set_value_requires_value(self):
        with self.assertRaises(TypeError):
            self.message.set_value("PID", 0, 3)

    def test_changing_identifier_reindexes(self):
        self.message.set_value("PID", 0, 0, "ZPI")
        self.assertFalse(self.message.has_segment("PID"))
        self.assertEqual(self.message.get_value("ZPI", 0, 18), "ACCT1")


class TestStructuralMutation(unittest.TestCase):

    def setUp(self):
        self.message = HL7Message(
            MSH + "\r"
            "PID|1\r"
            "IN1|1\r"
            "NK1|1\r"
            "IN1|2\r"
            "OBX|1\r"
            "IN1|3"
        )

    def assertIndexConsistent(self):
        segments = self.message.get_all_segments()
        for segment_id in {segment[:3] for segment in segments if segment}:
            expected = [segment for segment in segments if segment[:3] == segment_id]
            self.assertEqual(self.message.get_segments(segment_id), expected)

    def test_remove_all_segments(self):
        removed = self.message.remove_all_segments("IN1")
        self.assertEqual(removed, 3)
        self.assertEqual(self.message.get_segments("IN1"), [])
        self.assertEqual(
            [segment[:3] for segment in self.message.get_all_segments()],
            ["MSH", "PID", "NK1", "OBX"]
        )
        self.assertIndexConsistent()

    def test_remove_all_segments_none_present(self):
        self.assertEqual(self.message.remove_all_segments("ZZZ"), 0)
        self.assertEqual(self.message.segment_count, 7)

    def test_insert_segment(self):
        self.message.insert_segment(2, "IN1|0")
        self.assertEqual(self.message.get_segment("IN1"), "IN1|0")
        self.assertEqual(self.message.get_value("IN1", 3, 1), "3")
        self.assertIndexConsistent()

    def test_insert_segment_from_fields(self):
        self.message.insert_segment(1, ["EVN", "A01", "20240101"])
        self.assertEqual(self.message.get_all_segments()[1], "EVN|A01|20240101")
        self.assertEqual(self.message.get_field("EVN", 2), "20240101")

    def test_append_segment_from_fields_is_indexed(self):
        self.message.append_segment(["ZZ1", "a", "b"])
        self.assertEqual(self.message.get_field("ZZ1", 2), "b")
        self.assertEqual(self.message.segment_count, 8)

    def test_insert_segment_with_terminator_rejected(self):
        with self.assertRaises(MalformedMessageError):
            self.message.insert_segment(1, "ZZZ|a\rb")
        self.assertEqual(self.message.segment_count, 7)

    def test_append_short_segment_rejected(self):
        with self.assertRaises(MalformedMessageError):
            self.message.append_segment("AB")
        self.assertEqual(self.message.segment_count, 7)

    def test_remove_segment_at(self):
        self.message.remove_segment_at(2)
        self.assertEqual(self.message.get_segments("IN1"), ["IN1|2", "IN1|3"])
        self.assertIndexConsistent()

    def test_remove_segment_at_out_of_range(self):
        with self.assertRaises(IndexError):
            self.message.remove_segment_at(7)
        with self.assertRaises(IndexError):
            self.message.remove_segment_at(-1)

    def test_cache_cleared_on_removal(self):
        # warm the cache for every IN1 position
        for occurrence in range(3):
            self.message.get_value("IN1", occurrence, 1)
        self.message.remove_segment_at(1)
        self.assertEqual(self.message.get_value("IN1", 0, 1), "1")
        self.assertEqual(self.message.get_value("NK1", 0, 1), "1")
        self.assertEqual(self.message.get_all_fields("OBX"), ["OBX", "1"])
        self.assertEqual(self.message.get_value("IN1", 2, 1), "3")

    def test_cache_cleared_on_insert(self):
        self.assertEqual(self.message.get_field("PID", 1), "1")
        self.message.insert_segment(1, "EVN|A01")
        self.assertEqual(self.message.get_field("PID", 1), "1")
        self.assertEqual(self.message.get_field("EVN", 1), "A01")

    def test_len(self):
        self.assertEqual(len(self.message), 7)


class TestDelimiterChanges(unittest.TestCase):

    def test_change_clears_cache(self):
        message = HL7Message(MSH + "\rPID|a#b|c")
        self.assertEqual(message.get_field("PID", 1), "a#b")
        message.field_delimiter = "#"
        self.assertEqual(message.get_all_fields("PID"), ["PID|a", "b|c"])

    def test_change_does_not_rewrite_text(self):
        message = HL7Message(SAMPLE)
        message.component_delimiter = "*"
        self.assertEqual(message.component_delimiter, "*")
        self.assertEqual(message.to_string(), SAMPLE + "\r")

    def test_all_accessors(self):
        message = HL7Message()
        message.repetition_delimiter = "@"
        message.subcomponent_delimiter = "%"
        message.escape_character = "!"
        self.assertEqual(message.delimiters, Delimiters(repetition="@", subcomponent="%", escape="!"))

    def test_invalid_delimiter(self):
        message = HL7Message()
        with self.assertRaises(ValueError):
            message.field_delimiter = ""


class TestHL7Parser(unittest.TestCase):

    def setUp(self):
        self.parser = HL7Parser()

    def test_split_messages_line_endings(self):
        content = MSH + "\r\n" + PID + "\n" + MSH + "\rOBX|1"
        messages = split_messages(content)
        self.assertEqual(messages, [SAMPLE, MSH + "\rOBX|1"])

    def test_split_messages_ignores_leading_text(self):
        self.assertEqual(split_messages("junk\n\n" + MSH), [MSH])

    def test_split_messages_strips_framing(self):
        self.assertEqual(split_messages(wrap_message(SAMPLE)), [SAMPLE])

    def test_split_messages_keeps_field_whitespace(self):
        content = MSH + "\rPID|1||||Doe \rNTE|1||\tnote\r"
        self.assertEqual(split_messages(content), [MSH + "\rPID|1||||Doe \rNTE|1||\tnote"])

    def test_parse_file_multiple(self):
        content = (
            "MSH|^~\\&|EPIC||||20250502130000||SIU^S12|MSG1|P|2.3|\n"
            "PID|1||P12345||Doe^John\n"
            "MSH|^~\\&|EPIC||||20250502140000||SIU^S12|MSG2|P|2.3|\n"
            "PID|1||P67890||Smith^Jane\n"
        )
        messages = self.parser.parse_file(content)
        self.assertEqual(len(messages), 2)
        self.assertEqual(messages[0].message_control_id, "MSG1")
        self.assertEqual(messages[1].get_value("PID", 0, 5, 0, 1), "Jane")

    def test_parse_file_skips_malformed(self):
        content = "MSH|^~\nPID|1\n" + SAMPLE
        with self.assertLogs('hl7_parser', level='WARNING'):
            messages = self.parser.parse_file(content)
        self.assertEqual(len(messages), 1)


if __name__ == '__main__':
    unittest.main()

import io
import json
import os
import tempfile
import unittest
from contextlib import redirect_stdout
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

from hl7_backloader import (
    BackloadError, BackloadRecord, BackloadSettings,
    backload_file, build_result_message, parse_record, read_records
)
from hl7_cli import HL7CLI, main
from hl7_envelope import is_wrapped, wrap_message
from hl7_kafka import HL7FileProducer, HL7KafkaConsumer, build_output
from hl7_parser import HL7Message, HL7Parser

MSH = "MSH|^~\\&|A|B|C|D|20240101||ORU^R01|1|P|2.5"
PID = "PID|1|||||||||||||||||ACCT1||"
SAMPLE = MSH + "\r" + PID


def write_file(directory, name, content):
    path = os.path.join(directory, name)
    with open(path, 'w', newline='') as f:
        f.write(content)
    return path


def read_file(path):
    with open(path, 'r', newline='') as f:
        return f.read()


class TestBackloader(unittest.TestCase):

    def test_parse_record(self):
        self.assertEqual(parse_record("ACCT1|42\n"), BackloadRecord("ACCT1", "42"))
        self.assertEqual(parse_record("ACCT1|42|extra"), BackloadRecord("ACCT1", "42"))

    def test_parse_record_invalid(self):
        with self.assertRaises(BackloadError):
            parse_record("ACCT1")
        with self.assertRaises(BackloadError):
            parse_record("|42")

    def test_read_records_skips_blank_lines(self):
        records = read_records(["A|1\n", "\n", "B|2\n"])
        self.assertEqual([r.account_number for r in records], ["A", "B"])

    def test_build_result_message(self):
        message = build_result_message(BackloadRecord("ACCT1", "42"), "20240101120000")
        self.assertEqual(message.segment_count, 4)
        self.assertEqual(
            message.get_segment("MSH"),
            "MSH|^~\\&|BOOST|BOOST|HIS|BOOST|20240101120000||ORU^R01|20240101120000|P|2.5"
        )
        self.assertEqual(message.message_type, "ORU^R01")
        self.assertEqual(message.get_value("PID", 0, 18), "ACCT1")
        self.assertEqual(message.get_value("OBR", 0, 7), "20240101120000")
        self.assertEqual(message.get_value("OBX", 0, 3), "ADMPL3")
        self.assertEqual(message.get_value("OBX", 0, 5), "42")
        self.assertEqual(message.get_value("OBX", 0, 11), "F")

    def test_build_result_message_settings(self):
        settings = BackloadSettings(sending_application="LAB", observation_id="GLU")
        message = build_result_message(BackloadRecord("ACCT1", "42"), "20240101120000", settings)
        self.assertEqual(message.get_value("MSH", 0, 2), "LAB")
        self.assertEqual(message.get_value("OBX", 0, 3), "GLU")

    def test_backload_file(self):
        with tempfile.TemporaryDirectory() as tmp:
            input_path = write_file(tmp, "accounts.txt", "ACCT1|42\nACCT2|7\n")
            output_dir = os.path.join(tmp, "out")

            written = backload_file(input_path, output_dir)

            self.assertEqual(len(written), 2)
            self.assertTrue(written[0].name.endswith("_ACCT1.ecj"))
            content = written[1].read_bytes().decode('ascii')
            message = HL7Message(content)
            self.assertEqual(message.get_value("PID", 0, 18), "ACCT2")
            self.assertEqual(message.get_value("OBX", 0, 5), "7")

    def test_backload_file_wrapped(self):
        with tempfile.TemporaryDirectory() as tmp:
            input_path = write_file(tmp, "accounts.txt", "ACCT1|42\n")
            written = backload_file(input_path, tmp, BackloadSettings(wrap_for_mllp=True))
            self.assertTrue(is_wrapped(written[0].read_bytes().decode('ascii')))


class TestHL7CLI(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.path = write_file(self.tmp.name, "sample.hl7", SAMPLE + "\r")

    def tearDown(self):
        self.tmp.cleanup()

    def test_get(self):
        output = io.StringIO()
        with redirect_stdout(output):
            main(['get', self.path, 'PID-18'])
        self.assertEqual(output.getvalue(), "ACCT1\n")

    def test_set(self):
        out = os.path.join(self.tmp.name, "out.hl7")
        main(['set', self.path, 'PID-3.0.0', 'X', '-o', out])
        self.assertEqual(read_file(out), MSH + "\rPID|1||X|||||||||||||||ACCT1||\r")

    def test_set_wrapped(self):
        out = os.path.join(self.tmp.name, "out.hl7")
        main(['set', self.path, 'PID-1', '2', '--wrap', '-o', out])
        content = read_file(out)
        self.assertTrue(is_wrapped(content))
        self.assertEqual(HL7Message(content).get_field("PID", 1), "2")

    def test_set_keeps_every_message_and_field_whitespace(self):
        second = "MSH|^~\\&|A|B|C|D|20240101||ORU^R01|2|P|2.5"
        path = write_file(
            self.tmp.name, "batch.hl7",
            MSH + "\rPID|1||||Doe \rNTE|1||\tnote\r" + second + "\rPID|2\r"
        )
        out = os.path.join(self.tmp.name, "out.hl7")
        main(['set', path, 'PID-1', '9', '-o', out])
        self.assertEqual(
            read_file(out),
            MSH + "\rPID|9||||Doe \rNTE|1||\tnote\r" + second + "\rPID|2\r"
        )

    def test_set_selected_message(self):
        second = "MSH|^~\\&|A|B|C|D|20240101||ORU^R01|2|P|2.5"
        path = write_file(self.tmp.name, "batch.hl7", SAMPLE + "\r" + second + "\rPID|2\r")
        out = os.path.join(self.tmp.name, "out.hl7")
        main(['set', path, 'PID-1', '9', '-m', '1', '-o', out])
        self.assertEqual(read_file(out), SAMPLE + "\r" + second + "\rPID|9\r")

        output = io.StringIO()
        with redirect_stdout(output):
            main(['get', out, 'PID-1', '-m', '1'])
        self.assertEqual(output.getvalue(), "9\n")

    def test_set_message_index_out_of_range(self):
        with self.assertRaises(SystemExit) as cm:
            main(['set', self.path, 'PID-1', '9', '-m', '1'])
        self.assertEqual(cm.exception.code, 1)

    def test_set_refuses_file_with_malformed_message(self):
        path = write_file(self.tmp.name, "batch.hl7", SAMPLE + "\rMSH|^~\r")
        out = os.path.join(self.tmp.name, "out.hl7")
        with self.assertRaises(SystemExit) as cm:
            main(['set', path, 'PID-1', '9', '-o', out])
        self.assertEqual(cm.exception.code, 1)
        self.assertFalse(os.path.exists(out))

    def test_wrap_and_unwrap(self):
        wrapped = os.path.join(self.tmp.name, "wrapped.hl7")
        unwrapped = os.path.join(self.tmp.name, "unwrapped.hl7")
        main(['wrap', self.path, '-o', wrapped])
        main(['unwrap', wrapped, '-o', unwrapped])
        self.assertEqual(read_file(wrapped), wrap_message(SAMPLE + "\r"))
        self.assertEqual(read_file(unwrapped), SAMPLE + "\r")

    def test_export_json(self):
        out = os.path.join(self.tmp.name, "out.json")
        main(['export', self.path, '-f', 'json', '-o', out])
        documents = json.loads(read_file(out))
        self.assertEqual(len(documents), 1)
        self.assertEqual([child["name"] for child in documents[0]["children"]], ["MSH", "PID"])

    def test_export_xml_stdout(self):
        output = io.StringIO()
        with redirect_stdout(output):
            main(['export', self.path])
        self.assertIn("<PID.18>ACCT1</PID.18>", output.getvalue())

    def test_export_directory(self):
        write_file(self.tmp.name, "second.hl7", MSH + "\nOBX|1|NM\n")
        output_dir = os.path.join(self.tmp.name, "xml")
        results = HL7CLI(HL7Parser()).process_directory(self.tmp.name, "*.hl7", output_dir)
        self.assertEqual(sorted(results), ["sample.hl7", "second.hl7"])
        self.assertTrue(Path(output_dir, "second.xml").exists())

    def test_backload(self):
        input_path = write_file(self.tmp.name, "accounts.txt", "ACCT9|1\n")
        output_dir = os.path.join(self.tmp.name, "backload")
        main(['backload', input_path, '-o', output_dir])
        self.assertEqual(len(list(Path(output_dir).glob("*_ACCT9.ecj"))), 1)

    def test_missing_file(self):
        with self.assertRaises(SystemExit) as cm:
            main(['get', os.path.join(self.tmp.name, "missing.hl7"), 'PID-1'])
        self.assertEqual(cm.exception.code, 1)

    def test_malformed_file(self):
        path = write_file(self.tmp.name, "bad.hl7", "PID|1\r")
        with self.assertRaises(SystemExit) as cm:
            main(['get', path, 'PID-1'])
        self.assertEqual(cm.exception.code, 1)

    def test_no_command(self):
        with redirect_stdout(io.StringIO()):
            with self.assertRaises(SystemExit) as cm:
                main([])
        self.assertEqual(cm.exception.code, 1)


class TestKafka(unittest.TestCase):

    @patch('hl7_kafka.KafkaProducer')
    def test_file_producer_wraps(self, producer_cls):
        with tempfile.TemporaryDirectory() as tmp:
            path = write_file(tmp, "sample.hl7", SAMPLE)
            producer = HL7FileProducer('localhost:9092', 'hl7-raw', wrap_for_mllp=True)
            producer.send_files([path])
            producer.close()

        producer_cls.return_value.send.assert_called_once_with('hl7-raw', value=wrap_message(SAMPLE))
        producer_cls.return_value.close.assert_called_once()

    def setUp(self):
        self.consumer = HL7KafkaConsumer('localhost:9092', 'hl7-raw', 'hl7-trees', max_workers=1)
        self.consumer.producer = MagicMock()

    def tearDown(self):
        self.consumer.executor.shutdown(wait=True)

    def test_process_message(self):
        record = SimpleNamespace(value=wrap_message(SAMPLE), offset=5, partition=0)
        self.consumer._process_message(record, HL7Parser(), None)

        topic, = self.consumer.producer.send.call_args.args
        value = self.consumer.producer.send.call_args.kwargs['value']
        self.assertEqual(topic, 'hl7-trees')
        self.assertEqual(value['source_offset'], 5)
        self.assertEqual(value['segment_count'], 2)
        self.assertEqual(value['message_control_id'], '1')
        self.assertEqual(value['tree']['name'], 'HL7Message')

    def test_process_message_error_topic(self):
        record = SimpleNamespace(value="not hl7", offset=6, partition=1)
        self.consumer._process_message(record, HL7Parser(), None)

        topic, = self.consumer.producer.send.call_args.args
        value = self.consumer.producer.send.call_args.kwargs['value']
        self.assertEqual(topic, 'hl7-trees-errors')
        self.assertEqual(value['source_partition'], 1)
        self.assertEqual(value['raw_message'], "not hl7")

    def test_process_message_error_handler(self):
        handler = MagicMock()
        record = SimpleNamespace(value="not hl7", offset=7, partition=0)
        self.consumer._process_message(record, HL7Parser(), handler)

        handler.assert_called_once()
        self.consumer.producer.send.assert_not_called()

    @patch('hl7_kafka.signal.signal')
    @patch('hl7_kafka.KafkaProducer')
    @patch('hl7_kafka.KafkaConsumer')
    def test_start_processes_partial_batch(self, consumer_cls, producer_cls, _signal):
        kafka_consumer = consumer_cls.return_value
        records = [
            SimpleNamespace(value=SAMPLE, offset=offset, partition=0)
            for offset in range(3)
        ]
        polls = []

        def poll(timeout_ms, max_records):
            polls.append(max_records)
            if len(polls) == 1:
                return {('hl7-raw', 0): records}
            self.consumer.running = False
            return {}

        kafka_consumer.poll.side_effect = poll
        self.consumer.start(HL7Parser())

        self.assertEqual(polls, [100, 100])
        sent_topics = [c.args[0] for c in producer_cls.return_value.send.call_args_list]
        self.assertEqual(sent_topics, ['hl7-trees'] * 3)
        kafka_consumer.commit.assert_called_once()
        kafka_consumer.close.assert_called_once()

    @patch('hl7_kafka.signal.signal')
    @patch('hl7_kafka.KafkaProducer')
    @patch('hl7_kafka.KafkaConsumer')
    def test_start_stops_while_idle(self, consumer_cls, producer_cls, _signal):
        kafka_consumer = consumer_cls.return_value

        def poll(timeout_ms, max_records):
            self.consumer._signal_handler(15, None)
            return {}

        kafka_consumer.poll.side_effect = poll
        self.consumer.start(HL7Parser())

        kafka_consumer.poll.assert_called_once_with(timeout_ms=1000, max_records=100)
        kafka_consumer.commit.assert_not_called()
        producer_cls.return_value.send.assert_not_called()

    def test_build_output(self):
        record = SimpleNamespace(offset=1, partition=2)
        output = build_output(record, HL7Message(SAMPLE))
        self.assertEqual(output['source_partition'], 2)
        self.assertEqual(len(output['tree']['children']), 2)


if __name__ == '__main__':
    unittest.main()

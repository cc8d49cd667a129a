import argparse
import json
import sys
from pathlib import Path
import logging

from hl7_envelope import wrap_message, unwrap_message
from hl7_parser import (
    HL7Address, HL7MessageError, HL7Parser, MalformedMessageError, split_messages
)
from hl7_tree import message_to_tree

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

EXPORT_FORMATS = ('xml', 'json')


class MessageIndexError(HL7MessageError, IndexError):
    pass


def read_text(filepath) -> str:
    # newline='' keeps bare CR segment terminators intact
    with open(filepath, 'r', newline='') as f:
        return f.read()


def write_text(filepath, content: str):
    output_path = Path(filepath)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, 'w', newline='') as f:
        f.write(content)


class HL7CLI:
    def __init__(self, parser):
        self.parser = parser

    def export_messages(self, content: str, export_format: str = 'xml', pretty: bool = False) -> str:
        messages = self.parser.parse_file(content)
        trees = [message_to_tree(message) for message in messages]

        if export_format == 'json':
            return json.dumps([tree.to_dict() for tree in trees], indent=2 if pretty else None)
        return '\n'.join(tree.to_xml(pretty=pretty) for tree in trees)

    def process_file(self, filepath: str, output_file: str = None, export_format: str = 'xml', pretty: bool = False):
        logger.info(f"Processing file: {filepath}")

        try:
            content = read_text(filepath)
            result = self.export_messages(content, export_format, pretty)

            if output_file:
                write_text(output_file, result)
                logger.info(f"Results written to {output_file}")
            else:
                print(result)

            return result

        except FileNotFoundError:
            logger.error(f"File not found: {filepath}")
            sys.exit(1)
        except Exception as e:
            logger.error(f"Error processing file: {e}")
            sys.exit(1)

    def process_directory(self, directory: str, pattern: str = "*.hl7", output_dir: str = None,
                          export_format: str = 'xml'):
        logger.info(f"Processing directory: {directory}")

        dir_path = Path(directory)
        if not dir_path.exists():
            logger.error(f"Directory not found: {directory}")
            sys.exit(1)

        files = sorted(dir_path.glob(pattern))

        if not files:
            logger.warning(f"No files matching pattern '{pattern}' found in {directory}")
            return {}

        logger.info(f"Found {len(files)} files to process")

        results = {}

        for filepath in files:
            try:
                logger.info(f"Processing {filepath.name}...")

                result = self.export_messages(read_text(filepath), export_format)
                results[filepath.name] = result

                if output_dir:
                    output_file = Path(output_dir) / f"{filepath.stem}.{export_format}"
                    write_text(output_file, result)
                    logger.info(f"Wrote {output_file}")

            except Exception as e:
                logger.error(f"Error processing {filepath.name}: {e}")
                continue

        logger.info(f"Total files processed: {len(results)}")

        if not output_dir:
            for result in results.values():
                print(result)

        return results

    def load_messages(self, filepath: str) -> list:
        # any message that fails to parse aborts the command
        raw_messages = split_messages(read_text(filepath))
        if not raw_messages:
            raise MalformedMessageError(f"No MSH segment found in {filepath}")
        return [self.parser.parse_message(raw_message) for raw_message in raw_messages]

    def select_message(self, messages: list, index: int, filepath: str):
        if not 0 <= index < len(messages):
            raise MessageIndexError(f"{filepath} holds {len(messages)} message(s), no message {index}")
        return messages[index]

    def get_value(self, filepath: str, address: str, index: int = 0) -> str:
        messages = self.load_messages(filepath)
        return self.select_message(messages, index, filepath).get(HL7Address.parse(address))

    def set_value(self, filepath: str, address: str, value: str, wrap_for_mllp: bool = False,
                  index: int = 0) -> str:
        messages = self.load_messages(filepath)
        self.select_message(messages, index, filepath).set(HL7Address.parse(address), value)
        logger.info(f"Set {address} in message {index} of {filepath}")
        return ''.join(message.to_string(wrap_for_mllp) for message in messages)


def emit(content: str, output_file: str = None):
    if output_file:
        write_text(output_file, content)
        logger.info(f"Output written to {output_file}")
    else:
        sys.stdout.write(content)


def main(argv=None):
    parser_obj = argparse.ArgumentParser(
        description='HL7 v2.x message toolkit',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog='''
Examples:
  Export a file as XML:
    python hl7_cli.py export input.hl7

  Export as JSON with output:
    python hl7_cli.py export input.hl7 -f json -o output.json

  Export directory:
    python hl7_cli.py export-dir ./hl7_files/ -o ./output/

  Read or write a value:
    python hl7_cli.py get input.hl7 PID-5.0.1
    python hl7_cli.py set input.hl7 "IN1[2]-3" newval -o out.hl7

  Frame for transport:
    python hl7_cli.py wrap input.hl7 -o framed.hl7

  Create ORU^R01 files from an account|value list:
    python hl7_cli.py backload accounts.txt -o ./out/

  Send to Kafka:
    python hl7_cli.py kafka-produce input.hl7 --bootstrap localhost:9092 --topic hl7-raw

  Start Kafka consumer:
    python hl7_cli.py kafka-consume --bootstrap localhost:9092 --input-topic hl7-raw --output-topic hl7-trees
        '''
    )

    subparsers = parser_obj.add_subparsers(dest='command', help='Commands')

    export_parser = subparsers.add_parser('export', help='Export every message in a file as a tree')
    export_parser.add_argument('file', help='Path to HL7 file')
    export_parser.add_argument('-f', '--format', choices=EXPORT_FORMATS, default='xml', help='Export format')
    export_parser.add_argument('-o', '--output', help='Output file')
    export_parser.add_argument('--pretty', action='store_true', help='Indent output')

    export_dir_parser = subparsers.add_parser('export-dir', help='Export all HL7 files in a directory')
    export_dir_parser.add_argument('directory', help='Directory containing HL7 files')
    export_dir_parser.add_argument('-p', '--pattern', default='*.hl7', help='File pattern (default: *.hl7)')
    export_dir_parser.add_argument('-f', '--format', choices=EXPORT_FORMATS, default='xml', help='Export format')
    export_dir_parser.add_argument('-o', '--output-dir', help='Output directory')

    get_parser = subparsers.add_parser('get', help='Print the value at an address')
    get_parser.add_argument('file', help='Path to HL7 file')
    get_parser.add_argument('address', help='Address, e.g. PID[0]-5.0.1')
    get_parser.add_argument('-m', '--message', type=int, default=0, help='Message index within the file (default: 0)')

    set_parser = subparsers.add_parser('set', help='Write a value at an address')
    set_parser.add_argument('file', help='Path to HL7 file')
    set_parser.add_argument('address', help='Address, e.g. PID[0]-5.0.1')
    set_parser.add_argument('value', help='New value')
    set_parser.add_argument('-m', '--message', type=int, default=0, help='Message index within the file (default: 0)')
    set_parser.add_argument('-o', '--output', help='Output file (default: stdout)')
    set_parser.add_argument('--wrap', action='store_true', help='Wrap output for MLLP transport')

    wrap_parser = subparsers.add_parser('wrap', help='Add MLLP framing')
    wrap_parser.add_argument('file', help='Path to HL7 file')
    wrap_parser.add_argument('-o', '--output', help='Output file (default: stdout)')

    unwrap_parser = subparsers.add_parser('unwrap', help='Remove MLLP framing')
    unwrap_parser.add_argument('file', help='Path to HL7 file')
    unwrap_parser.add_argument('-o', '--output', help='Output file (default: stdout)')

    backload_parser = subparsers.add_parser('backload', help='Create ORU^R01 files from account|value rows')
    backload_parser.add_argument('file', help='Input file with account|value rows')
    backload_parser.add_argument('-o', '--output-dir', required=True, help='Destination directory')
    backload_parser.add_argument('--wrap', action='store_true', help='Wrap each message for MLLP transport')

    kafka_produce_parser = subparsers.add_parser('kafka-produce', help='Send HL7 files to Kafka')
    kafka_produce_parser.add_argument('files', nargs='+', help='HL7 files to send')
    kafka_produce_parser.add_argument('--bootstrap', required=True, help='Kafka bootstrap servers')
    kafka_produce_parser.add_argument('--topic', required=True, help='Kafka topic')
    kafka_produce_parser.add_argument('--wrap', action='store_true', help='Wrap content for MLLP transport')

    kafka_produce_dir_parser = subparsers.add_parser('kafka-produce-dir',
                                                     help='Send all HL7 files from a directory to Kafka')
    kafka_produce_dir_parser.add_argument('directory', help='Directory containing HL7 files')
    kafka_produce_dir_parser.add_argument('-p', '--pattern', default='*.hl7', help='File pattern (default: *.hl7)')
    kafka_produce_dir_parser.add_argument('--bootstrap', required=True, help='Kafka bootstrap servers')
    kafka_produce_dir_parser.add_argument('--topic', required=True, help='Kafka topic')
    kafka_produce_dir_parser.add_argument('--wrap', action='store_true', help='Wrap content for MLLP transport')

    kafka_consume_parser = subparsers.add_parser('kafka-consume', help='Consume HL7 from Kafka and publish trees')
    kafka_consume_parser.add_argument('--bootstrap', required=True, help='Kafka bootstrap servers')
    kafka_consume_parser.add_argument('--input-topic', required=True, help='Input Kafka topic')
    kafka_consume_parser.add_argument('--output-topic', required=True, help='Output Kafka topic')
    kafka_consume_parser.add_argument('--group-id', default='hl7-tree-group', help='Consumer group ID')
    kafka_consume_parser.add_argument('--workers', type=int, default=10, help='Number of worker threads')
    kafka_consume_parser.add_argument('--batch-size', type=int, default=100, help='Batch size')

    args = parser_obj.parse_args(argv)

    if not args.command:
        parser_obj.print_help()
        sys.exit(1)

    hl7_parser = HL7Parser()
    cli = HL7CLI(hl7_parser)

    if args.command == 'export':
        cli.process_file(args.file, args.output, args.format, args.pretty)

    elif args.command == 'export-dir':
        cli.process_directory(args.directory, args.pattern, args.output_dir, args.format)

    elif args.command in ('get', 'set', 'wrap', 'unwrap'):
        try:
            if args.command == 'get':
                print(cli.get_value(args.file, args.address, args.message))
            elif args.command == 'set':
                emit(cli.set_value(args.file, args.address, args.value, args.wrap, args.message), args.output)
            elif args.command == 'wrap':
                emit(wrap_message(read_text(args.file)), args.output)
            else:
                emit(unwrap_message(read_text(args.file)), args.output)
        except FileNotFoundError:
            logger.error(f"File not found: {args.file}")
            sys.exit(1)
        except HL7MessageError as e:
            logger.error(f"Error processing {args.file}: {e}")
            sys.exit(1)

    elif args.command == 'backload':
        from hl7_backloader import BackloadSettings, backload_file

        try:
            backload_file(args.file, args.output_dir, BackloadSettings(wrap_for_mllp=args.wrap))
        except FileNotFoundError:
            logger.error(f"File not found: {args.file}")
            sys.exit(1)
        except HL7MessageError as e:
            logger.error(f"Error backloading {args.file}: {e}")
            sys.exit(1)

    elif args.command == 'kafka-produce':
        from hl7_kafka import HL7FileProducer

        producer = HL7FileProducer(args.bootstrap, args.topic, args.wrap)
        producer.send_files(args.files)
        producer.close()
        logger.info("Files sent to Kafka successfully")

    elif args.command == 'kafka-produce-dir':
        from hl7_kafka import HL7FileProducer

        dir_path = Path(args.directory)
        if not dir_path.exists():
            logger.error(f"Directory not found: {args.directory}")
            sys.exit(1)

        files = [str(f) for f in sorted(dir_path.glob(args.pattern))]

        if not files:
            logger.warning(f"No files matching pattern '{args.pattern}' found")
            sys.exit(0)

        producer = HL7FileProducer(args.bootstrap, args.topic, args.wrap)
        producer.send_files(files)
        producer.close()
        logger.info(f"Sent {len(files)} files to Kafka successfully")

    elif args.command == 'kafka-consume':
        from hl7_kafka import HL7KafkaConsumer

        consumer = HL7KafkaConsumer(
            bootstrap_servers=args.bootstrap,
            input_topic=args.input_topic,
            output_topic=args.output_topic,
            group_id=args.group_id,
            max_workers=args.workers,
            batch_size=args.batch_size
        )
        consumer.start(hl7_parser)


if __name__ == '__main__':
    main()

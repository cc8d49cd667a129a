from kafka import KafkaConsumer, KafkaProducer
from typing import Callable, Optional
import json
import logging
from concurrent.futures import ThreadPoolExecutor
import signal

from hl7_envelope import wrap_message
from hl7_parser import HL7Parser
from hl7_tree import message_to_tree

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


class HL7KafkaConsumer:
    def __init__(
        self,
        bootstrap_servers: str,
        input_topic: str,
        output_topic: str,
        group_id: str = "hl7-tree-group",
        max_workers: int = 10,
        batch_size: int = 100,
        poll_timeout_ms: int = 1000
    ):
        self.bootstrap_servers = bootstrap_servers
        self.input_topic = input_topic
        self.output_topic = output_topic
        self.error_topic = f"{output_topic}-errors"
        self.group_id = group_id
        self.max_workers = max_workers
        self.batch_size = batch_size
        self.poll_timeout_ms = poll_timeout_ms
        self.running = False
        self.executor = ThreadPoolExecutor(max_workers=max_workers)

        self.consumer = None
        self.producer = None

    def start(self, parser: HL7Parser, error_handler: Optional[Callable] = None):
        self.running = True

        self.consumer = KafkaConsumer(
            self.input_topic,
            bootstrap_servers=self.bootstrap_servers,
            group_id=self.group_id,
            auto_offset_reset='earliest',
            enable_auto_commit=False,
            value_deserializer=lambda m: m.decode('utf-8'),
            max_poll_records=self.batch_size
        )

        self.producer = KafkaProducer(
            bootstrap_servers=self.bootstrap_servers,
            value_serializer=lambda v: json.dumps(v).encode('utf-8'),
            acks='all',
            retries=3
        )

        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

        logger.info(f"Started consuming from {self.input_topic}")

        try:
            for messages in self._poll_batches():
                # each record gets its own HL7Message; instances share no state
                futures = [
                    self.executor.submit(self._process_message, message, parser, error_handler)
                    for message in messages
                ]

                for future in futures:
                    future.result()

                self.consumer.commit()

        except Exception as e:
            logger.error(f"Error in consumer loop: {e}")
            raise
        finally:
            self.shutdown()

    def _poll_batches(self):
        # a short poll keeps the stop flag checked even when the topic is idle
        while self.running:
            records = self.consumer.poll(timeout_ms=self.poll_timeout_ms, max_records=self.batch_size)
            batch = [message for messages in records.values() for message in messages]
            if batch:
                yield batch

    def _process_message(self, message, parser: HL7Parser, error_handler: Optional[Callable]):
        try:
            hl7_messages = parser.parse_file(message.value)
            if not hl7_messages:
                raise ValueError("No HL7 message found in record")

            for hl7_message in hl7_messages:
                self.producer.send(self.output_topic, value=build_output(message, hl7_message))
                logger.info(f"Processed message: {hl7_message.message_control_id}")

            self.producer.flush()

        except Exception as e:
            logger.error(f"Error processing message at offset {message.offset}: {e}")

            if error_handler:
                error_handler(message, e)
            else:
                error_data = {
                    'source_offset': message.offset,
                    'source_partition': message.partition,
                    'error': str(e),
                    'raw_message': message.value[:500]
                }

                self.producer.send(self.error_topic, value=error_data)
                self.producer.flush()

    def _signal_handler(self, signum, frame):
        logger.info(f"Received signal {signum}, shutting down...")
        self.running = False

    def shutdown(self):
        logger.info("Shutting down consumer...")
        self.running = False

        if self.executor:
            self.executor.shutdown(wait=True)

        if self.producer:
            self.producer.flush()
            self.producer.close()

        if self.consumer:
            self.consumer.close()

        logger.info("Consumer shut down complete")


def build_output(record, hl7_message) -> dict:
    return {
        'source_offset': record.offset,
        'source_partition': record.partition,
        'segment_count': hl7_message.segment_count,
        'message_control_id': hl7_message.message_control_id,
        'tree': message_to_tree(hl7_message).to_dict()
    }


class HL7FileProducer:
    def __init__(self, bootstrap_servers: str, topic: str, wrap_for_mllp: bool = False):
        self.bootstrap_servers = bootstrap_servers
        self.topic = topic
        self.wrap_for_mllp = wrap_for_mllp
        self.producer = KafkaProducer(
            bootstrap_servers=bootstrap_servers,
            value_serializer=lambda v: v.encode('utf-8'),
            acks='all'
        )

    def send_file(self, filepath: str):
        logger.info(f"Sending file {filepath} to Kafka topic {self.topic}")

        with open(filepath, 'r', newline='') as f:
            content = f.read()

        if self.wrap_for_mllp:
            content = wrap_message(content)

        self.producer.send(self.topic, value=content)
        self.producer.flush()

        logger.info(f"File {filepath} sent successfully")

    def send_files(self, filepaths: list):
        for filepath in filepaths:
            self.send_file(filepath)

    def close(self):
        self.producer.close()

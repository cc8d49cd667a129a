import sys
import argparse
from pathlib import Path
from hl7_parser import HL7Parser
from hl7_tree import ROOT_NAME, message_to_xml

"""
CLI commands to convert HL7 messages to XML:

    python hl7_cli_light.py input.hl7
    python hl7_cli_light.py input.hl7 -o output.xml
    python hl7_cli_light.py input.hl7 --pretty

"""


def main(argv=None):
    parser = argparse.ArgumentParser(
        description='Simple HL7 v2.x to XML converter',
        usage='%(prog)s input.hl7 [-o OUTPUT] [--pretty]'
    )

    parser.add_argument(
        'input_file',
        help='Path to HL7 input file'
    )

    parser.add_argument(
        '-o', '--output',
        help='Output XML file (if not specified, prints to stdout)'
    )

    parser.add_argument(
        '--pretty',
        action='store_true',
        help='Pretty print XML output with indentation'
    )

    args = parser.parse_args(argv)

    input_path = Path(args.input_file)
    if not input_path.exists():
        print(f"Error: File not found: {args.input_file}", file=sys.stderr)
        sys.exit(1)

    try:
        with open(input_path, 'r', newline='') as f:
            content = f.read()
    except Exception as e:
        print(f"Error reading file: {e}", file=sys.stderr)
        sys.exit(1)

    try:
        hl7_parser = HL7Parser()
        messages = hl7_parser.parse_file(content)

        xml_output = '\n'.join(message_to_xml(message, pretty=args.pretty) for message in messages)

        if args.output:
            output_path = Path(args.output)
            output_path.parent.mkdir(parents=True, exist_ok=True)

            with open(output_path, 'w') as f:
                f.write(xml_output)

            print(f"Successfully converted {len(messages)} message(s) to <{ROOT_NAME}> documents")
            print(f"Output written to: {args.output}")
        else:
            print(xml_output)

    except Exception as e:
        print(f"Error converting HL7 file: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == '__main__':
    main()

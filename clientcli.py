import argparse
import sys
import time

import otp
from logging_util import setup_logger


def timestamped_filename(name: str, now=None) -> str:
    """A file name like key_2020-01-02T03_04_05.pem for the current time."""
    stamp = time.strftime("%Y-%m-%dT%H:%M:%S", time.localtime(now))
    return f"{name}_{stamp.replace(':', '_')}.pem"


class Client:
    def __init__(self):
        self.logger = setup_logger("client")

    def _write(self, name: str, armored: str, output=None) -> str:
        filename = output or timestamped_filename(name)
        with open(filename, 'w') as f:
            f.write(armored)
        self.logger.info(f"Saved {name} to {filename}")
        return filename

    def _read(self, filename: str) -> str:
        with open(filename, 'r') as f:
            return f.read()

    def generate_key(self, length: int, output=None) -> str:
        return self._write("key", otp.generate_key(length), output)

    def encrypt(self, message: str, key_file: str, output=None) -> str:
        cipher = otp.encrypt(message, self._read(key_file))
        return self._write("cipher", cipher, output)

    def decrypt(self, cipher_file: str, key_file: str) -> str:
        message = otp.decrypt(self._read(cipher_file), self._read(key_file))
        return otp.trim_padding(message)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="One-time-pad client")
    commands = parser.add_subparsers(dest="command", required=True)

    genkey = commands.add_parser("genkey", help="Generate a key file")
    genkey.add_argument("length", type=int, help="Maximum message length in bytes")
    genkey.add_argument("-o", "--output", help="Key file to write")

    encrypt = commands.add_parser("encrypt", help="Encrypt a message with a key file")
    encrypt.add_argument("--key", required=True, help="Key file")
    encrypt.add_argument("--message", help="Message to encrypt (read from stdin when omitted)")
    encrypt.add_argument("-o", "--output", help="Cipher file to write")

    decrypt = commands.add_parser("decrypt", help="Decrypt a cipher file with a key file")
    decrypt.add_argument("--key", required=True, help="Key file")
    decrypt.add_argument("--cipher", required=True, help="Cipher file")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    client = Client()
    try:
        if args.command == "genkey":
            client.generate_key(args.length, args.output)
        elif args.command == "encrypt":
            message = args.message if args.message is not None else sys.stdin.read().rstrip("\n")
            client.encrypt(message, args.key, args.output)
        else:
            print(client.decrypt(args.cipher, args.key))
    except (otp.OTPError, OSError) as e:
        client.logger.error(f"Could not {args.command}: {e}")
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())

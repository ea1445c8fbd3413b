#!/usr/bin/env python3
import argparse
from ecbutil import collect_known_plaintext_pairs, find_sequence_blocks, load_path, pair_with_plaintext

"""
Recover known plaintext pairs from an encrypted TPS file

A few regions of a TPS file have plaintext that follows from the structure of the file alone:

    The header index end block at 0x1C0 holds 16 copies of (file size - header size) >> 8.
    Empty space is filled with 0xB0B0B0B0, and it is the most repeated block in the file.

Given a decrypted copy of the same file, every block becomes a pair, and the run of incrementing bytes near the end
of the file can be located for use against other files.

The pairs are printed for a key recovery tool to consume.
"""


def main():
    parser = argparse.ArgumentParser(description="Print known plaintext pairs for an encrypted file")
    parser.add_argument("path", help="Encrypted file")
    parser.add_argument("--decrypted", help="Decrypted copy of the same file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Print the content of each pair")
    args = parser.parse_args()

    encrypted_blocks = load_path(args.path, encrypted=True)
    pairs = collect_known_plaintext_pairs(encrypted_blocks)

    if args.decrypted:
        plain_blocks = load_path(args.decrypted, encrypted=False)
        for block in find_sequence_blocks(plain_blocks):
            print(f"Sequence block at {block.offset:#x} ends with {block.words[-1]:#010x}")
        pairs += pair_with_plaintext(encrypted_blocks, plain_blocks)

    for pair in pairs:
        print(f"{pair.source}: {pair.ciphertext.offset:#x}")
        if args.verbose:
            print(f"    ct {pair.ciphertext.data.hex()}")
            print(f"    pt {pair.plaintext.data.hex()}")


if __name__ == "__main__":
    main()

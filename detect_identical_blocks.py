#!/usr/bin/env python3
import argparse
from ecbutil import find_identical_blocks, is_filler_block, load_path

"""
Detect repeated blocks in a TPS file

TPS files are encrypted with a 64 byte block cipher in ECB mode. Identical plaintext blocks therefore give identical
ciphertext blocks, and most of the repeats are empty space whose plaintext is known in advance.

List every group of identical blocks, biggest groups first.
"""


def main():
    parser = argparse.ArgumentParser(description="List groups of identical 64 byte blocks in a file")
    parser.add_argument("path", help="File to analyse")
    parser.add_argument("--plaintext", action="store_true", help="The file is already decrypted")
    parser.add_argument("-v", "--verbose", action="store_true", help="Print the content of each group")
    args = parser.parse_args()

    blocks = load_path(args.path, encrypted=not args.plaintext)
    same = find_identical_blocks(blocks)

    print(f"{len(blocks)} blocks, {len(same)} groups of identical blocks")
    for representative, duplicates in sorted(same.items(), key=lambda item: len(item[1]), reverse=True):
        offsets = ", ".join(f"{b.offset:#x}" for b in duplicates)
        filler = " (filler)" if args.plaintext and is_filler_block(representative) else ""
        print(f"{representative.offset:#x}{filler}: {len(duplicates)} more at {offsets}")
        if args.verbose:
            print(f"    {representative.data.hex()}")


if __name__ == "__main__":
    main()

import struct
from dataclasses import dataclass, field
from typing import Dict, Generator, Iterable, List, Sequence, Tuple
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes


# TPS files are encrypted in 64 byte blocks, each read as 16 little-endian 32 bit words
BLOCK_SIZE = 64
WORDS_PER_BLOCK = BLOCK_SIZE // 4
WORD_MASK = 0xFFFFFFFF

# The header index end block sits at a fixed offset and is derived from the file size
HEADER_INDEX_END_OFFSET = 0x1C0
HEADER_SIZE = 0x200
PAGE_SHIFT = 8

# Empty space in TPS files is filled with this word
FILLER_CONSTANT = 0xB0B0B0B0

_BLOCK_STRUCT = struct.Struct(f"<{WORDS_PER_BLOCK}I")


class TruncatedInputError(Exception):
    pass


class OffsetMismatchError(Exception):
    pass


@dataclass(frozen=True, order=True)
class Block:
    """
    A 64 byte block of a file, viewed as 16 little-endian 32 bit words

    Blocks sort by content first and by offset second. The encrypted flag takes no part in comparisons. Use
    same_value() to compare content alone.

    >>> a = Block.from_bytes(bytes(range(64)), offset=0x40, encrypted=True)
    >>> b = Block.from_bytes(bytes(range(64)), offset=0x80, encrypted=False)
    >>> a.same_value(b), b.same_value(a), a == b
    (True, True, False)
    >>> hex(a.words[0]), hex(a.words[15])
    ('0x3020100', '0x3f3e3d3c')
    >>> a.data == bytes(range(64))
    True
    >>> a < b
    True
    >>> Block.from_bytes(b"\\x01" + bytes(63)) > Block.from_bytes(bytes(63) + b"\\x01", offset=0x40)
    True
    >>> Block(words=(0,) * 15)
    Traceback (most recent call last):
    ValueError: A block holds 16 words, got 15
    >>> Block(words=(0,) * 15 + (1 << 32,))
    Traceback (most recent call last):
    ValueError: Word 0x100000000 does not fit in 32 bits
    """
    words: Tuple[int, ...]
    offset: int = 0
    encrypted: bool = field(default=False, compare=False)

    def __post_init__(self):
        # Stored as a tuple so blocks stay hashable
        object.__setattr__(self, "words", tuple(self.words))
        if len(self.words) != WORDS_PER_BLOCK:
            raise ValueError(f"A block holds {WORDS_PER_BLOCK} words, got {len(self.words)}")
        for word in self.words:
            if not 0 <= word <= WORD_MASK:
                raise ValueError(f"Word {word:#x} does not fit in 32 bits")
        if self.offset < 0:
            raise ValueError(f"Offset must be >= 0, got {self.offset}")

    @classmethod
    def from_bytes(cls, data: bytes, offset: int = 0, encrypted: bool = False) -> "Block":
        """
        Decode exactly 64 bytes into a Block

        >>> Block.from_bytes(bytes(10), offset=0x80)
        Traceback (most recent call last):
        ecbutil.TruncatedInputError: Block at offset 0x80 is 10 bytes, expected 64
        """
        if len(data) != BLOCK_SIZE:
            raise TruncatedInputError(f"Block at offset {offset:#x} is {len(data)} bytes, expected {BLOCK_SIZE}")
        return cls(words=_BLOCK_STRUCT.unpack(data), offset=offset, encrypted=encrypted)

    @property
    def data(self) -> bytes:
        return _BLOCK_STRUCT.pack(*self.words)

    def same_value(self, other: "Block") -> bool:
        return self.words == other.words

    def __repr__(self):
        return f"Block(offset={self.offset:#x}, encrypted={self.encrypted}, data={self.data.hex()})"


def chunkify(b: bytes, chunk_size: int) -> Generator[bytes, None, None]:
    """
    Yield chunk_size sized chunks from b

    >>> list(chunkify(b"ABCD", 2))
    [b'AB', b'CD']

    >>> list(chunkify(b"ABCDE", 2))
    [b'AB', b'CD', b'E']
    """
    for i in range(0, len(b), chunk_size):
        yield b[i:i + chunk_size]


def load_file(data: bytes, encrypted: bool) -> List[Block]:
    """
    Split the full contents of a file into 64 byte Blocks

    A file whose length is not a multiple of 64 is rejected, the final block is never padded.

    >>> blocks = load_file(bytes(range(256)) * 2, encrypted=True)
    >>> [hex(b.offset) for b in blocks]
    ['0x0', '0x40', '0x80', '0xc0', '0x100', '0x140', '0x180', '0x1c0']
    >>> all(b.encrypted for b in blocks)
    True
    >>> b"".join(b.data for b in blocks) == bytes(range(256)) * 2
    True
    >>> load_file(b"", encrypted=False)
    []
    >>> load_file(bytes(100), encrypted=False)
    Traceback (most recent call last):
    ecbutil.TruncatedInputError: Block at offset 0x40 is 36 bytes, expected 64
    """
    blocks: List[Block] = []
    for i, chunk in enumerate(chunkify(data, BLOCK_SIZE)):
        blocks.append(Block.from_bytes(chunk, offset=i * BLOCK_SIZE, encrypted=encrypted))
    return blocks


def load_path(path: str, encrypted: bool) -> List[Block]:
    with open(path, "rb") as f:
        return load_file(f.read(), encrypted=encrypted)


def find_identical_blocks(blocks: Iterable[Block]) -> Dict[Block, List[Block]]:
    """
    Find blocks with the same content. TPS uses ECB mode, so identical encrypted blocks map to the same plaintext.

    Each key is the first block of its content in scan order, mapped to the later blocks that share that content.
    Blocks without a duplicate are left out. Keys are ordered by content.

    >>> x, y = bytes([1]) * 64, bytes([2]) * 64
    >>> same = find_identical_blocks(load_file(x + x + y + x, encrypted=True))
    >>> [(hex(rep.offset), [hex(b.offset) for b in dups]) for rep, dups in same.items()]
    [('0x0', ['0x40', '0xc0'])]

    >>> find_identical_blocks(load_file(bytes(range(128)), encrypted=True))
    {}

    >>> same = find_identical_blocks(load_file(y + x + y + x + y, encrypted=False))
    >>> [(hex(rep.offset), [hex(b.offset) for b in dups]) for rep, dups in same.items()]
    [('0x40', ['0xc0']), ('0x0', ['0x80', '0x100'])]
    """
    buckets: Dict[Tuple[int, ...], List[Block]] = {}
    for block in blocks:
        buckets.setdefault(block.words, []).append(block)

    same = {bucket[0]: bucket[1:] for bucket in buckets.values() if len(bucket) > 1}
    return dict(sorted(same.items(), key=lambda item: item[0]))


def is_filler_constant(value: int) -> bool:
    """
    0xB0B0B0B0 words are scattered around TPS files and mark empty space

    >>> is_filler_constant(0xB0B0B0B0)
    True
    >>> is_filler_constant(0xB0B0B0B1)
    False
    """
    return value == FILLER_CONSTANT


def is_filler_block(block: Block) -> bool:
    return all(is_filler_constant(word) for word in block.words)


def is_byte_sequence_part(value: int) -> bool:
    """
    Return True when the bytes of value, least significant first, each go up by one (wrapping from 0xFF to 0x00)

    >>> is_byte_sequence_part(int.from_bytes(bytes([0x27, 0x28, 0x29, 0x2A]), "little"))
    True
    >>> is_byte_sequence_part(int.from_bytes(bytes([0x27, 0x28, 0x29, 0x2B]), "little"))
    False
    >>> is_byte_sequence_part(int.from_bytes(bytes([0xFF, 0x00, 0x01, 0x02]), "little"))
    True
    >>> is_byte_sequence_part(0x0100FFFE)
    True
    """
    b = (value & WORD_MASK).to_bytes(4, "little")
    return all((hi - lo) % 256 == 1 for lo, hi in zip(b, b[1:]))


def get_header_index_end_block(file_blocks: Sequence[Block], encrypted: bool) -> Block:
    """
    Return the header index end block of a file, either as found in the file or as computed plaintext

    This block is one of the few with predictable content at a fixed location. It holds 16 copies of the file size,
    minus the header size, shifted right by 8 bits.

    >>> ct = load_file(bytes(range(64)) * 9, encrypted=True)
    >>> get_header_index_end_block(ct, encrypted=True) is ct[7]
    True
    >>> get_header_index_end_block(ct[1:], encrypted=True)
    Traceback (most recent call last):
    ecbutil.OffsetMismatchError: Block 7 has offset 0x200, expected 0x1c0
    >>> get_header_index_end_block(ct[:7], encrypted=True)
    Traceback (most recent call last):
    ecbutil.OffsetMismatchError: File has 7 blocks, too few to hold the block at 0x1c0

    >>> pt = get_header_index_end_block([Block.from_bytes(bytes(64), offset=0x10000)], encrypted=False)
    >>> hex(pt.offset), pt.encrypted, set(pt.words) == {(0x10000 + 0x100 - 0x200) >> 8}
    ('0x1c0', False, True)
    >>> hex(pt.words[0])
    '0xff'

    The computation is done on unsigned 32 bit words, so a tiny file wraps around
    >>> hex(get_header_index_end_block(load_file(bytes(64), encrypted=False), encrypted=False).words[0])
    '0xffffff'
    """
    if encrypted:
        index = HEADER_INDEX_END_OFFSET // BLOCK_SIZE
        if len(file_blocks) <= index:
            raise OffsetMismatchError(f"File has {len(file_blocks)} blocks, "
                                      f"too few to hold the block at {HEADER_INDEX_END_OFFSET:#x}")
        block = file_blocks[index]
        if block.offset != HEADER_INDEX_END_OFFSET:
            raise OffsetMismatchError(f"Block {index} has offset {block.offset:#x}, "
                                      f"expected {HEADER_INDEX_END_OFFSET:#x}")
        return block

    if not file_blocks:
        raise ValueError("Cannot compute the header index end block of an empty file")
    last_offset = file_blocks[-1].offset
    value = ((last_offset + 0x100 - HEADER_SIZE) & WORD_MASK) >> PAGE_SHIFT
    return Block(words=(value,) * WORDS_PER_BLOCK, offset=HEADER_INDEX_END_OFFSET, encrypted=False)


def generate_sequence_block(end: int) -> Block:
    """
    Most TPS files have an area of incrementing bytes near the end of the file. The offset differs, but the whole
    block can be rebuilt from its last 4 bytes.

    >>> block = generate_sequence_block(0x2A292827)
    >>> block.data[-4:].hex()
    '2728292a'
    >>> block.data[0], block.data[-1], len(block.data)
    (235, 42, 64)
    >>> hex(block.offset), block.encrypted
    ('0x0', False)

    >>> block = generate_sequence_block(0x020100FF)
    >>> hex(block.words[-1])
    '0x20100ff'
    >>> all((b - a) % 256 == 1 for a, b in zip(block.data, block.data[1:]))
    True
    >>> all(is_byte_sequence_part(word) for word in block.words)
    True
    """
    start = (end >> 24) & 0xFF
    sequence = bytes((start - (BLOCK_SIZE - 1 - i)) & 0xFF for i in range(BLOCK_SIZE))
    return Block.from_bytes(sequence, offset=0, encrypted=False)


def find_sequence_blocks(blocks: Iterable[Block]) -> List[Block]:
    """
    Return the blocks whose content is a full run of incrementing bytes

    >>> plain = bytes(64) + generate_sequence_block(0x44434241).data + bytes(range(60)) + bytes([1, 2, 3, 4])
    >>> [hex(b.offset) for b in find_sequence_blocks(load_file(plain, encrypted=False))]
    ['0x40']
    """
    found: List[Block] = []
    for block in blocks:
        end = block.words[-1]
        if is_byte_sequence_part(end) and block.same_value(generate_sequence_block(end)):
            found.append(block)
    return found


def filler_block(offset: int = 0) -> Block:
    """
    >>> is_filler_block(filler_block(0x400)), filler_block().data[:4]
    (True, b'\\xb0\\xb0\\xb0\\xb0')
    """
    return Block(words=(FILLER_CONSTANT,) * WORDS_PER_BLOCK, offset=offset, encrypted=False)


@dataclass(frozen=True)
class KnownPlaintextPair:
    """
    A ciphertext block and its proven plaintext, ready to be fed into key recovery

    >>> ct = Block.from_bytes(bytes(64), offset=0x40, encrypted=True)
    >>> KnownPlaintextPair(ciphertext=ct, plaintext=ct, source="test")
    Traceback (most recent call last):
    ValueError: Plaintext block at 0x40 is marked encrypted
    """
    ciphertext: Block
    plaintext: Block
    source: str

    def __post_init__(self):
        if not self.ciphertext.encrypted:
            raise ValueError(f"Ciphertext block at {self.ciphertext.offset:#x} is not marked encrypted")
        if self.plaintext.encrypted:
            raise ValueError(f"Plaintext block at {self.plaintext.offset:#x} is marked encrypted")


def collect_known_plaintext_pairs(encrypted_blocks: Sequence[Block]) -> List[KnownPlaintextPair]:
    """
    Build the known plaintext pairs that can be derived from an encrypted file alone

    The header index end block is always paired. The most repeated ciphertext block is assumed to be empty space
    and paired with a filler block.

    >>> key = b"YELLOW SUBMARINE"
    >>> pt = b"".join(bytes([i]) * 64 for i in range(8)) + filler_block().data * 3 + bytes([9]) * 64
    >>> ct = load_file(ecb_encrypt_blocks(pt, key=key), encrypted=True)
    >>> pairs = collect_known_plaintext_pairs(ct)
    >>> [(p.source, hex(p.ciphertext.offset), hex(p.plaintext.offset)) for p in pairs]
    [('header-index-end', '0x1c0', '0x1c0'), ('filler', '0x200', '0x200')]
    >>> pairs[0].plaintext.words[0] == (0x2c0 + 0x100 - 0x200) >> 8
    True
    >>> pairs[1].plaintext.data == pt[0x200:0x240]
    True

    >>> [p.source for p in collect_known_plaintext_pairs(load_file(ecb_encrypt_blocks(pt[:0x200], key), True))]
    ['header-index-end']
    """
    pairs = [KnownPlaintextPair(ciphertext=get_header_index_end_block(encrypted_blocks, encrypted=True),
                                plaintext=get_header_index_end_block(encrypted_blocks, encrypted=False),
                                source="header-index-end")]

    same = find_identical_blocks(encrypted_blocks)
    if same:
        # max() keeps the first of equally repeated classes, which is the lowest in block order
        representative = max(same, key=lambda block: len(same[block]))
        pairs.append(KnownPlaintextPair(ciphertext=representative,
                                        plaintext=filler_block(representative.offset),
                                        source="filler"))
    return pairs


def pair_with_plaintext(encrypted_blocks: Sequence[Block], plain_blocks: Sequence[Block],
                        source: str = "decrypted-file") -> List[KnownPlaintextPair]:
    """
    Pair every block of an encrypted file with the block at the same offset of its decrypted copy

    >>> ct = load_file(bytes(128), encrypted=True)
    >>> pt = load_file(bytes(128), encrypted=False)
    >>> [hex(p.plaintext.offset) for p in pair_with_plaintext(ct, pt)]
    ['0x0', '0x40']
    >>> pair_with_plaintext(ct, pt[:1])
    Traceback (most recent call last):
    ecbutil.OffsetMismatchError: Encrypted file has 2 blocks, plaintext file has 1
    >>> pair_with_plaintext(ct[1:], pt[:1])
    Traceback (most recent call last):
    ecbutil.OffsetMismatchError: Ciphertext block at 0x40 lines up with plaintext block at 0x0
    """
    if len(encrypted_blocks) != len(plain_blocks):
        raise OffsetMismatchError(f"Encrypted file has {len(encrypted_blocks)} blocks, "
                                  f"plaintext file has {len(plain_blocks)}")
    pairs: List[KnownPlaintextPair] = []
    for ct, pt in zip(encrypted_blocks, plain_blocks):
        if ct.offset != pt.offset:
            raise OffsetMismatchError(f"Ciphertext block at {ct.offset:#x} lines up with plaintext block at "
                                      f"{pt.offset:#x}")
        pairs.append(KnownPlaintextPair(ciphertext=ct, plaintext=pt, source=source))
    return pairs


def ecb_encrypt_blocks(plaintext: bytes, key: bytes) -> bytes:
    """
    Encrypt a 64 byte aligned buffer using AES-128 in ECB mode, without padding

    The result repeats wherever the plaintext repeats, just like an encrypted TPS file, which makes it useful for
    exercising the analysis without real files.

    >>> ct = ecb_encrypt_blocks(bytes(128), key=b"YELLOW SUBMARINE")
    >>> len(ct), ct[:64] == ct[64:]
    (128, True)

    >>> ecb_encrypt_blocks(bytes(65), key=b"YELLOW SUBMARINE")
    Traceback (most recent call last):
    ecbutil.TruncatedInputError: Plaintext length 65 is not a multiple of 64

    >>> ecb_encrypt_blocks(bytes(64), key=b"too short")
    Traceback (most recent call last):
    ValueError: Invalid key size (72) for AES.
    """
    if len(plaintext) % BLOCK_SIZE != 0:
        raise TruncatedInputError(f"Plaintext length {len(plaintext)} is not a multiple of {BLOCK_SIZE}")
    cipher = Cipher(algorithms.AES128(key), modes.ECB())
    encryptor = cipher.encryptor()
    return encryptor.update(plaintext) + encryptor.finalize()

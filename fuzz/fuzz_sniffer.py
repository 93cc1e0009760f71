import asyncio
import sys

import atheris
from helpers import EnhancedDataProvider

with atheris.instrument_imports():
    from formparse.base import ByteStream
    from formparse.exceptions import BoundaryError
    from formparse.formdata import sniff_boundary


async def sniff(chunks: list[bytes], max_size: int) -> None:
    stream = ByteStream(chunks)
    try:
        boundary, scratch = await sniff_boundary(stream, max_size)
    except BoundaryError:
        # Nothing may be lost when sniffing fails.
        rest = b"".join([chunk async for chunk in stream])
        assert rest == b"".join(chunks)
        return

    assert boundary
    assert scratch.startswith(b"--" + boundary)


def TestOneInput(data: bytes) -> None:
    fdp = EnhancedDataProvider(data)
    max_size = fdp.ConsumeIntInRange(1, 2048)
    asyncio.run(sniff(fdp.ConsumeChunks(), max_size))


def main():
    atheris.Setup(sys.argv, TestOneInput)
    atheris.Fuzz()


if __name__ == "__main__":
    main()

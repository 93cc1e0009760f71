import asyncio
import sys

import atheris
from helpers import EnhancedDataProvider

with atheris.instrument_imports():
    from python_multipart.exceptions import DecodeError

    from formparse import any_, obj
    from formparse.exceptions import FormError
    from formparse.formdata import read_form

parser = obj({"field": any_(), "file": any_()}, max_for_ram=16)


async def read_url_encoded(fdp: EnhancedDataProvider) -> None:
    headers = {"Content-Type": "application/x-www-form-urlencoded"}
    await read_form(fdp.ConsumeChunks(), headers=headers)


async def read_multipart_form_data(fdp: EnhancedDataProvider) -> None:
    boundary = "boundary"
    headers = {"Content-Type": f"multipart/form-data; boundary={boundary}"}
    body = (
        f"--{boundary}\r\n"
        f'Content-Disposition: form-data; name="file"; filename="a.txt"\r\n\r\n'
        f"{fdp.ConsumeRandomString()}\r\n"
        f"--{boundary}--\r\n"
    )
    fields = await read_form([body.encode("latin1", errors="ignore")], headers=headers)
    fields.cleanup()


async def read_sniffed(fdp: EnhancedDataProvider) -> None:
    fields = await read_form(fdp.ConsumeChunks())
    fields.cleanup()


async def parse_stream(fdp: EnhancedDataProvider) -> None:
    result = await parser.stream(fdp.ConsumeChunks())
    for value in result.values():
        for item in value if isinstance(value, list) else [value]:
            if hasattr(item, "cleanup"):
                item.cleanup()


def TestOneInput(data: bytes) -> None:
    fdp = EnhancedDataProvider(data)
    targets = [read_url_encoded, read_multipart_form_data, read_sniffed, parse_stream]
    target = fdp.PickValueInList(targets)

    try:
        asyncio.run(target(fdp))
    except (FormError, DecodeError):
        # Bad transfer encodings are reported per part, as is.
        return


def main():
    atheris.Setup(sys.argv, TestOneInput)
    atheris.Fuzz()


if __name__ == "__main__":
    main()

import atheris


class EnhancedDataProvider(atheris.FuzzedDataProvider):
    def ConsumeRandomBytes(self) -> bytes:
        return self.ConsumeBytes(self.ConsumeIntInRange(0, self.remaining_bytes()))

    def ConsumeRandomString(self) -> str:
        return self.ConsumeUnicodeNoSurrogates(self.ConsumeIntInRange(0, self.remaining_bytes()))

    def ConsumeChunks(self, max_chunks: int = 8) -> list[bytes]:
        """Splits the remaining input into a random number of chunks, the way
        a network body would arrive."""
        count = self.ConsumeIntInRange(1, max_chunks)
        chunks = [self.ConsumeBytes(self.ConsumeIntInRange(0, self.remaining_bytes())) for _ in range(count - 1)]
        chunks.append(self.ConsumeBytes(self.remaining_bytes()))
        return chunks

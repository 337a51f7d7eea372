import unittest

from frontdesk.errors import (
    FrontDeskError,
    IncompleteVisitsError,
    NotFoundError,
    OperationResult,
    returns_result,
)


class OperationResultTests(unittest.TestCase):
    def test_unwrap_returns_value_or_raises_error(self) -> None:
        self.assertEqual(OperationResult.success(3).unwrap(), 3)

        with self.assertRaises(NotFoundError):
            OperationResult.failure(NotFoundError("missing")).unwrap()

    def test_failure_without_error_still_raises_domain_error(self) -> None:
        result = OperationResult(ok=False)

        self.assertFalse(result)
        with self.assertRaises(FrontDeskError) as raised:
            result.unwrap()
        self.assertIn("without reporting an error", str(raised.exception))

    def test_returns_result_catches_domain_errors_only(self) -> None:
        @returns_result
        def blocked():
            raise IncompleteVisitsError("resolve first", ["cons-1"])

        @returns_result
        def broken():
            raise RuntimeError("bug")

        result = blocked()
        self.assertFalse(result)
        self.assertEqual(result.error.to_dict()["consultationIds"], ["cons-1"])
        with self.assertRaises(RuntimeError):
            broken()


if __name__ == "__main__":
    unittest.main()

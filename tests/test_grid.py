import unittest

from yolox_kit.errors import ConfigurationInvalid
from yolox_kit.grid import (
    GridStrideCache,
    GridStrideTable,
    crop_to_stride_multiple,
    expected_cell_count,
    generate_grid_strides,
)
from yolox_kit.types import GridCoordinateAndStride


class TestGenerateGridStrides(unittest.TestCase):
    def test_cell_count_256(self) -> None:
        table = generate_grid_strides([8, 16, 32], 256, 256)
        self.assertEqual(len(table), 32 * 32 + 16 * 16 + 8 * 8)
        self.assertEqual(len(table), 1344)

    def test_cell_count_matches_sum_over_strides(self) -> None:
        strides = (8, 16, 32)
        for width, height in [(32, 32), (64, 32), (320, 256), (640, 480), (416, 416)]:
            table = generate_grid_strides(strides, height, width)
            expected = sum((width // s) * (height // s) for s in strides)
            self.assertEqual(len(table), expected)
            self.assertEqual(expected_cell_count(strides, height, width), expected)

    def test_row_major_order_finest_stride_first(self) -> None:
        table = generate_grid_strides([8, 16, 32], 64, 96)
        cols8, rows8 = 96 // 8, 64 // 8

        self.assertEqual(table[0], GridCoordinateAndStride(0, 0, 8))
        self.assertEqual(table[1], GridCoordinateAndStride(1, 0, 8))
        self.assertEqual(table[cols8 - 1], GridCoordinateAndStride(cols8 - 1, 0, 8))
        self.assertEqual(table[cols8], GridCoordinateAndStride(0, 1, 8))

        first16 = cols8 * rows8
        self.assertEqual(table[first16], GridCoordinateAndStride(0, 0, 16))
        self.assertEqual(table[len(table) - 1], GridCoordinateAndStride(96 // 32 - 1, 64 // 32 - 1, 32))

    def test_iteration_yields_records(self) -> None:
        table = generate_grid_strides([16, 32], 32, 32)
        records = list(table)
        self.assertEqual(
            records,
            [
                GridCoordinateAndStride(0, 0, 16),
                GridCoordinateAndStride(1, 0, 16),
                GridCoordinateAndStride(0, 1, 16),
                GridCoordinateAndStride(1, 1, 16),
                GridCoordinateAndStride(0, 0, 32),
            ],
        )
        self.assertEqual(GridStrideTable.from_records(records), table)

    def test_deterministic(self) -> None:
        self.assertEqual(generate_grid_strides([8, 16, 32], 128, 64), generate_grid_strides([8, 16, 32], 128, 64))

    def test_table_is_read_only(self) -> None:
        table = generate_grid_strides([8], 16, 16)
        with self.assertRaises(ValueError):
            table.as_array()[0, 0] = 5

    def test_indivisible_dims_rejected(self) -> None:
        with self.assertRaises(ConfigurationInvalid):
            generate_grid_strides([8, 16, 32], 250, 256)

    def test_bad_strides_rejected(self) -> None:
        with self.assertRaises(ConfigurationInvalid):
            generate_grid_strides([], 32, 32)
        with self.assertRaises(ConfigurationInvalid):
            generate_grid_strides([0, 8], 32, 32)


class TestCropToStrideMultiple(unittest.TestCase):
    def test_crop_values(self) -> None:
        self.assertEqual(crop_to_stride_multiple((650, 481), 32), (640, 480))
        self.assertEqual(crop_to_stride_multiple((640, 480), 32), (640, 480))
        self.assertEqual(crop_to_stride_multiple((31, 70), 32), (0, 64))

    def test_idempotent(self) -> None:
        for dims in [(1, 1), (33, 65), (1920, 1080), (641, 359), (256, 256)]:
            for stride in (8, 16, 32, 64):
                once = crop_to_stride_multiple(dims, stride)
                self.assertEqual(crop_to_stride_multiple(once, stride), once)
                self.assertEqual(once[0] % stride, 0)
                self.assertEqual(once[1] % stride, 0)

    def test_cropped_dims_are_valid_grid_input(self) -> None:
        width, height = crop_to_stride_multiple((1000, 563), 32)
        table = generate_grid_strides([8, 16, 32], height, width)
        self.assertEqual(len(table), expected_cell_count([8, 16, 32], height, width))


class TestGridStrideCache(unittest.TestCase):
    def test_rebuild_only_when_cell_count_changes(self) -> None:
        cache = GridStrideCache((8, 16, 32))
        self.assertEqual(len(cache.table), 0)

        proposal_length = 8
        first = cache.ensure(1344 * proposal_length, proposal_length, 256, 256)
        self.assertEqual(len(first), 1344)
        self.assertEqual(cache.dims, (256, 256))

        again = cache.ensure(1344 * proposal_length, proposal_length, 256, 256)
        self.assertIs(again, first)

    def test_resolution_change_swaps_in_new_table(self) -> None:
        cache = GridStrideCache((8, 16, 32))
        proposal_length = 6
        old = cache.ensure(1344 * proposal_length, proposal_length, 256, 256)

        cells = expected_cell_count((8, 16, 32), 320, 320)
        new = cache.ensure(cells * proposal_length, proposal_length, 320, 320)
        self.assertIsNot(new, old)
        self.assertIs(cache.table, new)
        self.assertEqual(len(new), cells)
        # The previous table object is untouched.
        self.assertEqual(len(old), 1344)


if __name__ == "__main__":
    unittest.main()

"""Excel workbook stores: styling, colour handling, snapshots and writers."""

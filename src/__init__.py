"""mastery-path: spaced retention scheduling and mastery evaluation."""

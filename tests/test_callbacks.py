import logging

import pytest

from ipsolve.callbacks import IntermediateDispatcher, IterationStats, format_row
from ipsolve.exceptions import UserRequestedStop


def _stats(iter_count=3, alg_mod=0):
    return IterationStats(alg_mod=alg_mod, iter_count=iter_count, obj_value=1.5, inf_pr=1e-3,
                          inf_du=2e-2, mu=1e-2, d_norm=0.5, regularization_size=0.0,
                          alpha_du=1.0, alpha_pr=0.5, ls_trials=2)


class TestDispatcher:
    def test_callback_receives_values_in_order(self):
        seen = []
        IntermediateDispatcher(lambda *args: seen.append(args)).dispatch(_stats())
        assert seen == [(0, 3, 1.5, 1e-3, 2e-2, 1e-2, 0.5, 0.0, 1.0, 0.5, 2)]

    @pytest.mark.parametrize("ret", [None, True, 1])
    def test_continue(self, ret):
        IntermediateDispatcher(lambda *args: ret).dispatch(_stats())

    @pytest.mark.parametrize("ret", [False, 0])
    def test_false_stops(self, ret):
        with pytest.raises(UserRequestedStop):
            IntermediateDispatcher(lambda *args: ret).dispatch(_stats())

    def test_table_rows_and_frequency(self, caplog):
        logger = logging.getLogger("ipsolve.test_dispatch")
        disp = IntermediateDispatcher(logger=logger, print_frequency=2)
        with caplog.at_level(logging.INFO, logger=logger.name):
            for k in range(5):
                disp.dispatch(_stats(iter_count=k))
        rows = [r.getMessage() for r in caplog.records]
        # one header, then iterations 0, 2 and 4
        assert rows[0].startswith("iter")
        assert len(rows) == 4
        assert disp.last.iter_count == 4


class TestFormatRow:
    def test_restoration_marker(self):
        assert format_row(_stats(alg_mod=1)).startswith("   3r")
        assert format_row(_stats(alg_mod=0)).startswith("   3 ")

    def test_zero_regularization_prints_dash(self):
        row = format_row(_stats(), info="h")
        assert " - " in row
        assert "-2.0" in row  # lg(mu)
        assert row.rstrip().endswith("h  2")

"""
Tests for the unconstrained parameter transform.
"""

import numpy as np

from eco_em.em.parameters import (
    CARParameters,
    NCARParameters,
    NCARRegressionParameters,
)
from eco_em.em.transform import (
    fisher_z,
    inverse_fisher_z,
    transform,
    untransform,
)


class TestFisherZ:
    def test_known_values(self) -> None:
        np.testing.assert_allclose(fisher_z(0.0), 0.0)
        np.testing.assert_allclose(fisher_z(0.5), np.arctanh(0.5))

    def test_inverse(self) -> None:
        r = np.array([-0.99, -0.3, 0.0, 0.42, 0.95])
        np.testing.assert_allclose(inverse_fisher_z(fisher_z(r)), r)

    def test_inverse_formula(self) -> None:
        """(e^{2z} - 1) / (e^{2z} + 1)."""
        z = 0.7
        expected = (np.exp(2 * z) - 1) / (np.exp(2 * z) + 1)
        np.testing.assert_allclose(inverse_fisher_z(z), expected)


class TestTransform:
    def test_car_entries(self) -> None:
        """Means unchanged, variances logged, correlation z-transformed."""
        params = CARParameters(
            mu1=0.3, mu2=-1.2, sigma11=2.0, sigma22=0.5, rho=0.25
        )
        t = transform(params)

        np.testing.assert_allclose(
            t,
            [0.3, -1.2, np.log(2.0), np.log(0.5), np.arctanh(0.25)],
        )

    def test_car_round_trip(self) -> None:
        params = CARParameters(
            mu1=0.3, mu2=-1.2, sigma11=2.0, sigma22=0.5, rho=-0.6
        )
        back = untransform(transform(params), CARParameters)

        assert isinstance(back, CARParameters)
        np.testing.assert_allclose(back.to_array(), params.to_array())

    def test_ncar_round_trip(self) -> None:
        params = NCARParameters(
            mu3=0.1,
            mu1=-0.4,
            mu2=0.8,
            sigma3=1.7,
            sigma1=0.9,
            sigma2=1.3,
            rho13=0.2,
            rho23=-0.35,
            rho12=0.6,
        )
        back = untransform(transform(params), NCARParameters)

        np.testing.assert_allclose(back.to_array(), params.to_array())

    def test_regression_slopes_untransformed(self) -> None:
        """Slopes 6/7 pass through; rho12_3 is still z-transformed."""
        params = NCARRegressionParameters(
            mu3=0.1,
            mu1=-0.4,
            mu2=0.8,
            sigma3=1.7,
            sigma1_3=0.9,
            sigma2_3=1.3,
            beta1=2.5,
            beta2=-1.5,
            rho12_3=0.3,
        )
        t = transform(params)

        assert t[6] == 2.5
        assert t[7] == -1.5
        np.testing.assert_allclose(t[8], np.arctanh(0.3))
        np.testing.assert_allclose(t[3:6], np.log([1.7, 0.9, 1.3]))

        back = untransform(t, NCARRegressionParameters)
        np.testing.assert_allclose(back.to_array(), params.to_array())

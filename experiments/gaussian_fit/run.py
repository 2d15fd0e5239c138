#!/usr/bin/env python
from tqdm.auto import tqdm
import os, argparse, math, time, yaml
import pandas as pd
from pathlib import Path


def parse_args(argv=None):
    p = argparse.ArgumentParser()
    p.add_argument(
        "--cpu",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="Run on CPU (default). Pass --no-cpu to let JAX pick an accelerator.",
    )
    p.add_argument(
        "-c",
        "--config",
        type=str,
        default="experiment.yaml",
        help="Path to the YAML configuration file.",
    )
    p.add_argument(
        "-s",
        "--stem",
        type=str,
        default="gaussian_fit",
        help="Base name (stem) for the output CSV saved to the results/ directory.",
    )
    return p.parse_args(argv)


def main(args):
    if args.cpu:
        os.environ["JAX_PLATFORM_NAME"] = "cpu"

        # Tell XLA/Eigen to multi-thread on CPU
        os.environ["XLA_FLAGS"] = "--xla_cpu_multi_thread_eigen=true intrasession=true"

    # jax reads the platform variables on import
    import jax
    from loguru import logger
    from kef_score.estimator import KernelExpFamily
    from kef_score.errors import FitError
    from kef_score.util import fisher_divergence, gaussian_score

    jax.config.update("jax_enable_x64", True)

    for device in jax.devices():
        logger.info(f"Using device {device}")

    with open(args.config) as f:
        cfg = yaml.safe_load(f)

    replicates = int(cfg["replicates"])  # number of independent training samples
    dim = int(cfg["dim"])  # dimension of the target Gaussian
    num_train = int(cfg["num_train"])  # training points per replicate
    num_test = int(cfg["num_test"])  # held-out points for the Fisher divergence
    var = float(cfg["var"])  # variance of the target Gaussian
    batch_size = cfg.get("batch_size")  # partition size of the pairwise loops
    sigmas = [math.exp(x) for x in map(float, cfg["ln_sigmas"])]
    lambdas = [math.exp(x) for x in map(float, cfg["ln_lambdas"])]

    score = lambda X: gaussian_score(X, 0.0, var)

    def process_one_rep(rep):
        key_train, key_test = jax.random.split(jax.random.key(rep))

        # points are columns
        X_train = math.sqrt(var) * jax.random.normal(key_train, (dim, num_train))
        X_test = math.sqrt(var) * jax.random.normal(key_test, (dim, num_test))

        rows = []

        sigma_pbar = tqdm(sigmas, position=1, leave=False)
        for sigma in sigma_pbar:
            sigma_pbar.set_description(f"sigma = {sigma:.3f}")

            for lmbda in lambdas:
                est = KernelExpFamily(X_train, sigma, lmbda, batch_size=batch_size)

                start = time.perf_counter()
                try:
                    est.fit()
                except FitError as exc:
                    logger.warning(f"Fit failed for sigma={sigma:.3f}, lambda={lmbda:.3e}: {exc}")
                    rows.append({"replicate": rep, "sigma": sigma, "lambda": lmbda, "failed": True})
                    continue
                fit_time = time.perf_counter() - start

                rows.append(
                    {
                        "replicate": rep,
                        "sigma": sigma,
                        "lambda": lmbda,
                        "failed": False,
                        "fit_time": fit_time,
                        "rcond": est.state.rcond,
                        "fisher_train": float(fisher_divergence(est, X_train, score)),
                        "fisher_test": float(fisher_divergence(est, X_test, score)),
                    }
                )

        return rows

    # --------------- Fit over the grid -----------------

    results = []
    for rep in tqdm(range(replicates), desc="Replicates"):
        results.extend(process_one_rep(rep))

    # --------------- Save output -----------------

    outdir = Path("results")
    outdir.mkdir(exist_ok=True)
    pd.DataFrame(results).to_csv(outdir / f"{args.stem}.csv", index=False)
    logger.info(f"Saved results/{args.stem}.csv")


if __name__ == "__main__":
    main(parse_args())

"""
Main analysis script for the causal analysis of heart-failure survival.

Loads the clinical records, chooses a right-censoring cutoff, refines a literature
DAG against the data, estimates edge strengths, compares back-door adjusted and
unadjusted Cox models for the exposure, runs propensity-score and Double ML
robustness checks and cross-checks the graph with the PC algorithm.
"""

import sys
from pathlib import Path
import logging

# Add src to path for imports
sys.path.append(str(Path(__file__).parent / "src"))

from causal_heartfailure.config import AnalysisConfig
from causal_heartfailure.data.loader import HeartFailureDataLoader
from causal_heartfailure.data.preprocessor import HeartFailurePreprocessor
from causal_heartfailure.data.censoring import CutoffSelector
from causal_heartfailure.graph.literature import literature_dag, literature_edge_chooser
from causal_heartfailure.graph.independence import ConditionalIndependenceTester, GraphRefiner
from causal_heartfailure.graph.adjustment import backdoor_adjustment_set
from causal_heartfailure.models.edge_strength import EdgeStrengthEstimator, strengths_frame
from causal_heartfailure.models.survival import SurvivalAnalyzer
from causal_heartfailure.models.propensity import PropensityScoreAnalyzer
from causal_heartfailure.models.causal_models import DebiasedEffectEstimator
from causal_heartfailure.models.structure_learning import StructureLearner
from causal_heartfailure.visualization.plots import CausalVisualization
from causal_heartfailure.utils.helpers import (
    setup_logging, save_results, load_json, describe_by_outcome,
    format_results_table, ensure_directory
)


def main(config: AnalysisConfig = None):
    """Run the complete causal analysis pipeline."""

    config = config or AnalysisConfig()

    # Setup
    setup_logging(level="INFO")
    logger = logging.getLogger(__name__)

    figures_dir = ensure_directory(config.figures_dir)
    results_dir = ensure_directory(config.results_dir)

    logger.info(f"Starting causal analysis of {config.exposure} on {config.outcome}")

    # Step 1: Load, clean and apply the censoring cutoff
    logger.info("Step 1: Loading data and selecting the censoring cutoff")

    loader = HeartFailureDataLoader()
    raw_data = loader.load_uci() if config.fetch_from_uci else loader.load_csv(config.data_path)

    preprocessor = HeartFailurePreprocessor(
        duration_col=config.duration_col, outcome_col=config.outcome
    )
    processed_data = preprocessor.preprocess(raw_data)

    selector = CutoffSelector(
        duration_col=config.duration_col,
        event_col=config.outcome,
        time_range=config.cutoff_range,
        min_jump=config.min_jump
    )
    censoring_curve = selector.censoring_curve(processed_data)
    clean_data, cutoff = selector.fit_transform(processed_data, cutoff=config.cutoff)
    loader.save_checkpoint(clean_data, config.checkpoint_path)

    summary_stats = describe_by_outcome(clean_data, config.outcome)

    visualizer = CausalVisualization()
    visualizer.plot_censoring_curve(
        censoring_curve, cutoff, save_path=figures_dir / "censoring_curve.svg"
    )

    # Step 2: Test and refine the literature DAG
    logger.info("Step 2: Testing the literature DAG against the data")

    data = preprocessor.standardize(clean_data)
    schema = preprocessor.schema()
    tester = ConditionalIndependenceTester(schema, alpha=config.alpha)
    refiner = GraphRefiner(tester)

    initial_dag = literature_dag()
    dag, history = refiner.refine(
        initial_dag, data, literature_edge_chooser,
        max_iterations=config.max_refinement_iterations
    )
    added_edges = sorted(dag.edge_set() - initial_dag.edge_set())
    logger.info(f"Refinement added {len(added_edges)} edges in {len(history)} evaluations")

    # Step 3: Edge strengths and pruning
    logger.info("Step 3: Estimating edge strengths")

    estimator = EdgeStrengthEstimator(
        schema, outcome=config.outcome, duration_col=config.duration_col, alpha=config.alpha
    )
    sem = estimator.fit_sem(dag, data)
    strengths = estimator.estimate(dag, data, method='sem', sem=sem)
    partial_strengths = estimator.estimate(dag, data, method='partial')
    pruning = estimator.prune(dag, strengths, protected=[config.exposure, config.outcome])
    pruned_dag = pruning.dag

    visualizer.plot_causal_dag(
        dag, strengths, highlight=[config.exposure, config.outcome],
        title='Refined DAG with edge strengths', save_path=figures_dir / "refined_dag.svg"
    )
    visualizer.plot_causal_dag(
        pruned_dag, highlight=[config.exposure, config.outcome],
        title='Pruned DAG', save_path=figures_dir / "pruned_dag.svg"
    )

    # Step 4: Back-door adjustment and survival models
    logger.info("Step 4: Back-door adjustment for the exposure")

    adjustment_set = backdoor_adjustment_set(pruned_dag, config.exposure, config.outcome)
    adjustment = [node for node in pruned_dag.nodes if node in adjustment_set]

    survival = SurvivalAnalyzer(duration_col=config.duration_col, event_col=config.outcome)
    comparison = survival.compare_adjustment(data, config.exposure, adjustment)
    adjusted_model = comparison.models['adjusted']
    ph_check = survival.check_proportional_hazards(adjusted_model, data)

    curves = survival.predict_survival_curves(adjusted_model, data, config.exposure)
    visualizer.plot_survival_curves(
        curves, config.exposure, title=f'Predicted survival by {config.exposure}',
        save_path=figures_dir / "survival_curves.svg"
    )
    km = survival.kaplan_meier(clean_data, group_col=config.exposure)
    visualizer.plot_kaplan_meier(km, save_path=figures_dir / "kaplan_meier.svg")

    # Step 5: Propensity-score robustness checks
    logger.info("Step 5: Propensity-score analyses")

    propensity = PropensityScoreAnalyzer(
        duration_col=config.duration_col,
        event_col=config.outcome,
        caliper=config.caliper,
        max_weight=config.max_weight,
        random_state=config.random_state
    )
    effect_estimates = {
        'unadjusted': comparison.unadjusted,
        'adjusted': comparison.adjusted,
    }
    weight_summary = {}
    matching = None

    if adjustment:
        nuisance = propensity.fit_nuisance(data, config.exposure, adjustment)
        scores = propensity.propensity_scores(nuisance, data)
        effect_estimates['score_adjusted'] = propensity.adjusted_by_score(data, config.exposure, scores)

        threshold = config.matching_threshold
        if threshold is not None and config.exposure in preprocessor.scaled_columns:
            # clinical units -> standardized units
            i = preprocessor.scaled_columns.index(config.exposure)
            threshold = (threshold - preprocessor.scaler.mean_[i]) / preprocessor.scaler.scale_[i]
        matching = propensity.matching_analysis(data, config.exposure, adjustment, threshold=threshold)
        effect_estimates['matched'] = matching.estimate
        visualizer.plot_balance(
            matching.balance_before, matching.balance_after,
            save_path=figures_dir / "matching_balance.svg"
        )

        diagnostics = propensity.stabilized_weights(data, config.exposure, scores)
        effect_estimates['ipw'] = propensity.weighted_fit(data, config.exposure, diagnostics)
        weight_summary = diagnostics.summary()
    else:
        logger.warning("Empty adjustment set; skipping propensity-score analyses")

    # Step 6: Double ML cross-check
    logger.info("Step 6: Double Machine Learning cross-check")

    dml_estimator = DebiasedEffectEstimator(n_folds=config.n_folds, random_state=config.random_state)
    dml_covariates = adjustment or None
    dml_data = dml_estimator.prepare_data(
        data, treatment_col=config.exposure, outcome_col=config.outcome, covariates=dml_covariates
    )
    dml_effects = dml_estimator.estimate_effects(dml_data, methods=config.dml_methods)
    learner_performance = dml_estimator.evaluate_learner_performance()

    visualizer.plot_effect_estimates(
        effect_estimates, title=f'Log hazard ratio of {config.exposure}',
        save_path=figures_dir / "effect_estimates.svg"
    )

    # Step 7: Structure learning cross-check
    logger.info("Step 7: Structure learning cross-check")

    variables = preprocessor.modeling_variables(clean_data)
    binned = preprocessor.discretize(clean_data[variables], n_bins=config.n_bins)
    learner = StructureLearner(alpha=config.alpha, indep_test='chisq')
    forbidden = (StructureLearner.outcome_is_sink(config.outcome, variables)
                 + StructureLearner.no_causes_of('Age', variables)
                 + StructureLearner.no_causes_of('Sex', variables))
    learned = learner.learn(binned, forbidden=forbidden)
    structure_comparison = learner.compare(learned, dag)
    visualizer.plot_learned_structure(learned, save_path=figures_dir / "learned_structure.svg")

    # Step 8: Results summary and reporting
    logger.info("Step 8: Generating results summary")

    results = {
        'data_summary': {
            'n_patients_raw': len(raw_data),
            'n_patients': len(clean_data),
            'cutoff': cutoff,
            'event_rate': clean_data[config.outcome].mean(),
            'summary_by_outcome': summary_stats.to_dict(),
        },
        'refinement': {
            'added_edges': added_edges,
            'n_evaluations': len(history),
            'remaining_violations': [str(v.claim) for v in history[-1].violations],
            'final_tests': history[-1].to_frame(),
        },
        'edge_strengths': {
            'sem': strengths_frame(strengths),
            'partial': strengths_frame(partial_strengths),
            'sem_fit': {
                'log_likelihood': sem.log_likelihood,
                'aic': sem.aic,
                'bic': sem.bic,
                'r_squared': sem.r_squared,
            },
            'pruned_edges': pruning.removed_edges,
            'pruned_nodes': pruning.removed_nodes,
        },
        'adjustment': comparison.to_dict(),
        'proportional_hazards': ph_check.reset_index(),
        'effect_estimates': {name: est.to_dict() for name, est in effect_estimates.items()},
        'propensity_weights': weight_summary,
        'matching': {
            'treatment': matching.treatment,
            'n_treated': matching.match.n_treated,
            'n_pairs': len(matching.match.pairs),
            'n_unmatched': matching.match.n_unmatched,
            'balance_before': matching.balance_before,
            'balance_after': matching.balance_after,
        } if matching else {},
        'double_ml': {
            'effects': {name: est.to_dict() for name, est in dml_effects.items()},
            'learner_performance': learner_performance,
        },
        'structure_learning': {
            'directed': learned.directed,
            'undirected': learned.undirected,
            'comparison': structure_comparison.summary(),
        },
    }

    save_results(results, results_dir / "causal_analysis_results.json")

    # Print summary
    print("\n" + "="*80)
    print("HEART FAILURE CAUSAL ANALYSIS RESULTS")
    print("="*80)

    print(f"\nCensoring cutoff: t={cutoff} days "
          f"({len(raw_data) - len(clean_data)} early-censored patients dropped)")
    print(f"Edges added by refinement: {added_edges or 'none'}")
    print(f"Edges pruned: {len(pruning.removed_edges)}, nodes dropped: {pruning.removed_nodes or 'none'}")
    print(f"Adjustment set for {config.exposure}: {adjustment or 'empty'}")

    print(format_results_table(effect_estimates, f"{config.exposure} Hazard Ratios", hazard_scale=True))
    print(format_results_table(dml_effects, "Double ML Estimates (event indicator)"))

    print(f"\nUnadjusted HR: {comparison.unadjusted.hazard_ratio:.3f}, "
          f"adjusted HR: {comparison.adjusted.hazard_ratio:.3f}, "
          f"material difference: {'Yes' if comparison.differs_materially else 'No'}")
    print(f"Structure learning agreement: {structure_comparison.summary()}")

    logger.info("Analysis complete! Check the figures/ and results/ directories for outputs.")
    print(f"\nAnalysis complete! Outputs saved to:")
    print(f"- Figures: {figures_dir}")
    print(f"- Results: {results_dir}")


if __name__ == "__main__":
    config = AnalysisConfig.from_dict(load_json(sys.argv[1])) if len(sys.argv) > 1 else None
    main(config)
